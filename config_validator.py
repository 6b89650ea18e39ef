#!/usr/bin/env python3
# filename: config_validator.py
# Version: 2.0.0 (Race Proxy Sections)
"""
Configuration Validation Module for listeners, upstream roles, list
sources, filtering and ipset enforcement.
"""

import os
from typing import Dict, List, Tuple, Any
from urllib.parse import urlparse

from utils import get_logger, parse_listen_url, parse_server_address

logger = get_logger("ConfigValidator")

UPSTREAM_ROLES = ('trusted', 'domestic')
UPSTREAM_TYPES = ('dns', 'doh')
AAAA_FILTER_MODES = ('off', 'all', 'china', 'foreign')
LIST_KEYS = ('cdn_ranges', 'domestic_ranges', 'blacklist', 'whitelist')


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""
    pass


class ConfigValidator:
    """Validates proxy configuration for common errors and inconsistencies"""

    def __init__(self):
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self, config: Dict[str, Any]) -> Tuple[bool, List[str], List[str]]:
        """
        Validate entire configuration.

        Returns:
            (is_valid, errors, warnings)
        """
        self.errors = []
        self.warnings = []

        if not isinstance(config, dict):
            self.errors.append("Configuration must be a dictionary")
            return False, self.errors, self.warnings

        self._validate_logging(config.get('logging', {}))
        self._validate_server(config.get('server', {}))
        self._validate_upstream(config.get('upstream', {}))
        self._validate_lists(config.get('lists', {}))
        self._validate_filtering(config.get('filtering', {}))
        self._validate_enforcement(config.get('enforcement', {}))

        is_valid = len(self.errors) == 0

        if self.errors:
            print("\n❌ CONFIGURATION ERRORS:")
            for i, err in enumerate(self.errors, 1):
                print(f"  {i}. {err}")

        if self.warnings:
            print("\n⚠️  CONFIGURATION WARNINGS:")
            for i, warn in enumerate(self.warnings, 1):
                print(f"  {i}. {warn}")

        if is_valid:
            logger.info("Configuration validation PASSED")
        else:
            logger.error(f"Configuration validation FAILED with {len(self.errors)} error(s)")

        if self.warnings:
            logger.warning(f"Configuration has {len(self.warnings)} warning(s)")

        return is_valid, self.errors, self.warnings

    def _check_bool(self, section: str, cfg: Dict[str, Any], keys):
        for key in keys:
            val = cfg.get(key)
            if val is not None and not isinstance(val, bool):
                self.errors.append(f"{section}.{key}: Must be boolean, got {type(val).__name__}")

    def _check_positive_int(self, section: str, cfg: Dict[str, Any], key: str):
        val = cfg.get(key)
        if val is None:
            return None
        if isinstance(val, bool) or not isinstance(val, int) or val < 1:
            self.errors.append(f"{section}.{key}: Must be positive integer")
            return None
        return val

    # =========================================================================
    # LOGGING SECTION
    # =========================================================================
    def _validate_logging(self, log_cfg: Dict[str, Any]):
        """Validate logging configuration"""
        if not isinstance(log_cfg, dict):
            if log_cfg is not None:
                self.errors.append("logging: Must be a dictionary")
            return

        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        level = log_cfg.get('level', 'INFO')
        if isinstance(level, str):
            if level.upper() not in valid_levels:
                self.errors.append(f"logging.level: Invalid level '{level}', must be one of {valid_levels}")
        else:
            self.errors.append(f"logging.level: Must be a string, got {type(level).__name__}")

        self._check_bool('logging', log_cfg, ['enable_console', 'console_timestamp', 'enable_file', 'enable_syslog'])

        file_path = log_cfg.get('file_path')
        if file_path is not None:
            if not isinstance(file_path, str):
                self.errors.append("logging.file_path: Must be string")
            elif log_cfg.get('enable_file', False):
                parent_dir = os.path.dirname(file_path) or '.'
                if not os.path.isdir(parent_dir):
                    self.warnings.append(f"logging.file_path: Directory '{parent_dir}' does not exist")

        syslog_addr = log_cfg.get('syslog_address')
        if syslog_addr is not None and not isinstance(syslog_addr, str):
            self.errors.append("logging.syslog_address: Must be string")

        syslog_proto = log_cfg.get('syslog_protocol', 'UDP')
        if syslog_proto and str(syslog_proto).upper() not in ['UDP', 'TCP']:
            self.errors.append(f"logging.syslog_protocol: Must be 'UDP' or 'TCP', got '{syslog_proto}'")

    # =========================================================================
    # SERVER SECTION
    # =========================================================================
    def _validate_server(self, server_cfg: Dict[str, Any]):
        """Validate listener configuration"""
        if not isinstance(server_cfg, dict):
            if server_cfg is not None:
                self.errors.append("server: Must be a dictionary")
            return

        listen = server_cfg.get('listen')
        if listen is not None:
            if not isinstance(listen, str):
                self.errors.append("server.listen: Must be string like 'dns://0.0.0.0:53'")
            else:
                try:
                    parse_listen_url(listen)
                except ValueError as e:
                    self.errors.append(f"server.listen: {e}")

        self._check_bool('server', server_cfg, ['exclusive', 'enable_tcp'])
        self._check_positive_int('server', server_cfg, 'udp_concurrency')

    # =========================================================================
    # UPSTREAM SECTION
    # =========================================================================
    def _validate_upstream(self, upstream_cfg: Dict[str, Any]):
        """Validate trusted/domestic resolver roles and the race deadline"""
        if not isinstance(upstream_cfg, dict):
            self.errors.append("upstream: Must be a dictionary")
            return

        race_timeout = self._check_positive_int('upstream', upstream_cfg, 'race_timeout_ms')
        self._check_positive_int('upstream', upstream_cfg, 'connection_limit')

        for role in UPSTREAM_ROLES:
            role_cfg = upstream_cfg.get(role)
            section = f"upstream.{role}"
            if not isinstance(role_cfg, dict):
                self.errors.append(f"{section}: Must be a dictionary with 'type'")
                continue

            kind = role_cfg.get('type')
            if kind not in UPSTREAM_TYPES:
                self.errors.append(f"{section}.type: Must be one of {list(UPSTREAM_TYPES)}, got '{kind}'")
            elif kind == 'dns':
                addr = role_cfg.get('addr')
                if not isinstance(addr, str) or not addr:
                    self.errors.append(f"{section}.addr: Required for type 'dns'")
                else:
                    try:
                        parse_server_address(addr)
                    except ValueError:
                        self.errors.append(f"{section}.addr: Invalid server address '{addr}'")
            else:
                url = role_cfg.get('url')
                if not isinstance(url, str) or not url:
                    self.errors.append(f"{section}.url: Required for type 'doh'")
                else:
                    parsed = urlparse(url)
                    if parsed.scheme not in ('https', 'http') or not parsed.hostname:
                        self.errors.append(f"{section}.url: Invalid DoH URL '{url}'")

            timeout = self._check_positive_int(section, role_cfg, 'timeout_ms')
            if timeout and race_timeout and timeout > race_timeout:
                self.warnings.append(
                    f"{section}.timeout_ms ({timeout}) exceeds upstream.race_timeout_ms ({race_timeout}); "
                    f"the race deadline will fire first"
                )

    # =========================================================================
    # LISTS SECTION
    # =========================================================================
    def _validate_lists(self, lists_cfg: Dict[str, Any]):
        """Validate list file paths. Missing files only warn, loading degrades to empty."""
        if not isinstance(lists_cfg, dict):
            if lists_cfg is not None:
                self.errors.append("lists: Must be a dictionary")
            return

        for key in LIST_KEYS:
            path = lists_cfg.get(key)
            if path is None or path == '':
                continue
            if not isinstance(path, str):
                self.errors.append(f"lists.{key}: Must be a file path string")
            elif not os.path.isfile(path):
                self.warnings.append(f"lists.{key}: File '{path}' not found, list will be empty")

    # =========================================================================
    # FILTERING SECTION
    # =========================================================================
    def _validate_filtering(self, filtering_cfg: Dict[str, Any]):
        if not isinstance(filtering_cfg, dict):
            if filtering_cfg is not None:
                self.errors.append("filtering: Must be a dictionary")
            return

        mode = filtering_cfg.get('aaaa_filter', 'off')
        if mode not in AAAA_FILTER_MODES:
            self.errors.append(f"filtering.aaaa_filter: Must be one of {list(AAAA_FILTER_MODES)}, got '{mode}'")

        self._check_bool('filtering', filtering_cfg, ['block_ptr'])

    # =========================================================================
    # ENFORCEMENT SECTION
    # =========================================================================
    def _validate_enforcement(self, enf_cfg: Dict[str, Any]):
        if not isinstance(enf_cfg, dict):
            if enf_cfg is not None:
                self.errors.append("enforcement: Must be a dictionary")
            return

        set_name = enf_cfg.get('ipset_name')
        if set_name is not None and not isinstance(set_name, str):
            self.errors.append("enforcement.ipset_name: Must be string (empty disables enforcement)")
        elif not set_name:
            self.warnings.append("enforcement.ipset_name: Not set, enforcement is disabled")

        command = enf_cfg.get('ipset_command')
        if command is not None:
            if not isinstance(command, str) or not command:
                self.errors.append("enforcement.ipset_command: Must be non-empty string")
            elif set_name and os.path.isabs(command) and not os.path.exists(command):
                self.warnings.append(f"enforcement.ipset_command: '{command}' not found")

        self._check_bool('enforcement', enf_cfg, ['auto_detect_rst'])
        self._check_positive_int('enforcement', enf_cfg, 'probe_timeout_ms')


def validate_config(config: Dict[str, Any]) -> Tuple[bool, List[str], List[str]]:
    """
    Convenience function to validate configuration.

    Returns:
        (is_valid, errors, warnings)
    """
    validator = ConfigValidator()
    return validator.validate(config)
