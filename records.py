#!/usr/bin/env python3
# filename: records.py
# -----------------------------------------------------------------------------
# Project: SmartDNS Race Proxy
# Version: 1.3.0 (Opaque Pass-Through Records)
# -----------------------------------------------------------------------------
"""
Normalized query/answer model shared by the upstream adapters and the
judgment engine.

Records form a closed set of variants. RECORD_TYPES maps the supported
query types to their variant and is the only place that decides whether a
type can be answered by the plain DNS transport. Types outside the table
that arrive inside a full DNS message are kept as OpaqueRecord and written
back as raw rdata.
"""

from dataclasses import dataclass
from typing import ClassVar, Dict, List, Tuple, Type, Union

import dns.message
import dns.name
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.TXT

from utils import expand_ipv6_address

DEFAULT_TTL = 300


def _absolute(name: str) -> str:
    return name if name.endswith('.') else name + '.'


def _relative(name: dns.name.Name) -> str:
    return name.to_text(omit_final_dot=True)


@dataclass(frozen=True)
class Query:
    """The single question of an inbound request."""
    name: str
    rdtype: int
    rdclass: int = dns.rdataclass.IN

    @classmethod
    def from_message(cls, message: dns.message.Message) -> "Query":
        q = message.question[0]
        return cls(_relative(q.name), q.rdtype, q.rdclass)

    @property
    def type_name(self) -> str:
        return dns.rdatatype.to_text(self.rdtype)


@dataclass(frozen=True)
class AddressRecord:
    name: str
    address: str
    ttl: int = DEFAULT_TTL

    def __post_init__(self):
        # Compressed IPv6 is always stored in full 8-group form
        if ':' in self.address:
            object.__setattr__(self, 'address', expand_ipv6_address(self.address))

    @property
    def rdtype(self) -> int:
        return dns.rdatatype.AAAA if ':' in self.address else dns.rdatatype.A

    @classmethod
    def from_rdata(cls, name, ttl, rdata):
        return cls(name, rdata.address, ttl)

    def to_rdata(self):
        return dns.rdata.from_text(dns.rdataclass.IN, self.rdtype, self.address)

    def describe(self) -> str:
        return self.address


@dataclass(frozen=True)
class NameServerRecord:
    name: str
    ns: str
    ttl: int = DEFAULT_TTL
    rdtype: ClassVar[int] = dns.rdatatype.NS

    @classmethod
    def from_rdata(cls, name, ttl, rdata):
        return cls(name, _relative(rdata.target), ttl)

    def to_rdata(self):
        return dns.rdata.from_text(dns.rdataclass.IN, self.rdtype, _absolute(self.ns))

    def describe(self) -> str:
        return self.ns


@dataclass(frozen=True)
class CanonicalNameRecord:
    name: str
    domain: str
    ttl: int = DEFAULT_TTL
    rdtype: ClassVar[int] = dns.rdatatype.CNAME

    @classmethod
    def from_rdata(cls, name, ttl, rdata):
        return cls(name, _relative(rdata.target), ttl)

    def to_rdata(self):
        return dns.rdata.from_text(dns.rdataclass.IN, self.rdtype, _absolute(self.domain))

    def describe(self) -> str:
        return self.domain


@dataclass(frozen=True)
class SoaRecord:
    name: str
    primary: str
    admin: str
    serial: int = 0
    refresh: int = 0
    retry: int = 0
    expire: int = 0
    minimum: int = 0
    ttl: int = DEFAULT_TTL
    rdtype: ClassVar[int] = dns.rdatatype.SOA

    @classmethod
    def from_rdata(cls, name, ttl, rdata):
        return cls(
            name, _relative(rdata.mname), _relative(rdata.rname),
            rdata.serial, rdata.refresh, rdata.retry, rdata.expire, rdata.minimum,
            ttl
        )

    def to_rdata(self):
        text = (f"{_absolute(self.primary)} {_absolute(self.admin)} "
                f"{self.serial} {self.refresh} {self.retry} {self.expire} {self.minimum}")
        return dns.rdata.from_text(dns.rdataclass.IN, self.rdtype, text)

    def describe(self) -> str:
        return f"primary {self.primary} admin {self.admin}"


@dataclass(frozen=True)
class MailExchangeRecord:
    name: str
    exchange: str
    priority: int
    ttl: int = DEFAULT_TTL
    rdtype: ClassVar[int] = dns.rdatatype.MX

    @classmethod
    def from_rdata(cls, name, ttl, rdata):
        return cls(name, _relative(rdata.exchange), rdata.preference, ttl)

    def to_rdata(self):
        return dns.rdata.from_text(dns.rdataclass.IN, self.rdtype, f"{self.priority} {_absolute(self.exchange)}")

    def describe(self) -> str:
        return f"{self.priority} {self.exchange}"


@dataclass(frozen=True)
class TextRecord:
    name: str
    data: str
    ttl: int = DEFAULT_TTL
    rdtype: ClassVar[int] = dns.rdatatype.TXT

    @classmethod
    def from_rdata(cls, name, ttl, rdata):
        return cls(name, b''.join(rdata.strings).decode('utf-8', errors='replace'), ttl)

    def to_rdata(self):
        raw = self.data.encode('utf-8')
        # character-strings are limited to 255 octets each
        chunks = [raw[i:i + 255] for i in range(0, len(raw), 255)] or [b'']
        return dns.rdtypes.ANY.TXT.TXT(dns.rdataclass.IN, self.rdtype, chunks)

    def describe(self) -> str:
        return self.data


@dataclass(frozen=True)
class OpaqueRecord:
    """Any record type outside RECORD_TYPES, carried as raw rdata bytes."""
    name: str
    rdtype: int
    data: bytes
    ttl: int = DEFAULT_TTL

    @classmethod
    def from_rdata(cls, name, ttl, rdata):
        return cls(name, rdata.rdtype, rdata.to_wire(), ttl)

    def to_rdata(self):
        return dns.rdata.GenericRdata(dns.rdataclass.IN, self.rdtype, self.data)

    def describe(self) -> str:
        return f"<{dns.rdatatype.to_text(self.rdtype)} {len(self.data)} bytes>"


Record = Union[
    AddressRecord, NameServerRecord, CanonicalNameRecord, SoaRecord,
    MailExchangeRecord, TextRecord, OpaqueRecord,
]

RECORD_TYPES: Dict[int, Type] = {
    dns.rdatatype.A: AddressRecord,
    dns.rdatatype.AAAA: AddressRecord,
    dns.rdatatype.NS: NameServerRecord,
    dns.rdatatype.CNAME: CanonicalNameRecord,
    dns.rdatatype.SOA: SoaRecord,
    dns.rdatatype.MX: MailExchangeRecord,
    dns.rdatatype.TXT: TextRecord,
}


def is_supported_type(rdtype: int) -> bool:
    return rdtype in RECORD_TYPES


def record_from_rdata(name: str, ttl: int, rdata) -> Record:
    """Decode one dnspython rdata into its record variant (OpaqueRecord if unmapped)."""
    variant = RECORD_TYPES.get(rdata.rdtype, OpaqueRecord)
    return variant.from_rdata(name, ttl, rdata)


@dataclass(frozen=True)
class NormalizedAnswer:
    """
    Uniform result of one upstream call.

    answered=False marks an upstream failure that was absorbed into an
    empty answer; it is never produced by a real NODATA reply.
    """
    question: Query
    records: Tuple[Record, ...] = ()
    answered: bool = True

    @classmethod
    def empty(cls, question: Query) -> "NormalizedAnswer":
        return cls(question, (), False)

    def addresses(self) -> List[str]:
        """IPv4 addresses of the A records, in answer order."""
        return [
            r.address for r in self.records
            if isinstance(r, AddressRecord) and r.rdtype == dns.rdatatype.A
        ]

    def to_response(self, request: dns.message.Message) -> dns.message.Message:
        """Build the reply to request, keeping its ID and question."""
        response = dns.message.make_response(request, recursion_available=True)
        for record in self.records:
            rrset = response.find_rrset(
                response.answer, dns.name.from_text(record.name),
                dns.rdataclass.IN, record.rdtype, create=True
            )
            rrset.add(record.to_rdata(), record.ttl)
        return response
