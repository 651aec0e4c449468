"""
Configuration loading and management for Query Group Sync.

This module handles loading configuration from YAML files, environment variables
and command-line overrides, with validation and defaults. The validated dictionary
is frozen into a SyncSettings object that the rest of the run receives explicitly.
"""

import os
import yaml
import logging
from dataclasses import dataclass, replace
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

MIN_SLOT = 1
MAX_SLOT = 15

MEMBER_LOOKUP_METHODS = ('memberof', 'attribute')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
            overrides: Dotted-key values (usually from the command line) applied over the file
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.overrides = overrides or {}
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment and command-line overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._apply_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _apply_overrides(self):
        """Apply explicit overrides; None values mean 'not given' and are skipped."""
        for config_key, value in self.overrides.items():
            if value is None:
                continue
            self._set_nested_value(self.config, config_key, value)
            logger.debug(f"Applied command-line override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        # Validate LDAP configuration
        ldap_config = self.config.get('ldap') or {}
        required_ldap_fields = ['server_url', 'bind_dn', 'bind_password']
        for field in required_ldap_fields:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        # Validate attribute slots
        sync_config = self.config.get('sync') or {}
        slots = {}
        if sync_config.get('query_slot') is None:
            errors.append("Missing required sync field: query_slot")
        for field in ('query_slot', 'filter_slot', 'scope_slot'):
            value = sync_config.get(field)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or not MIN_SLOT <= value <= MAX_SLOT:
                errors.append(f"sync.{field} must be an integer between {MIN_SLOT} and {MAX_SLOT}, got {value!r}")
                continue
            if value in slots:
                errors.append(f"sync.{field} uses slot {value}, already used by sync.{slots[value]}")
            slots[value] = field

        workers = sync_config.get('workers', 1)
        if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
            errors.append(f"sync.workers must be a positive integer, got {workers!r}")

        schema_config = self.config.get('schema') or {}
        member_lookup = schema_config.get('member_lookup', 'memberof')
        if member_lookup not in MEMBER_LOOKUP_METHODS:
            errors.append(f"schema.member_lookup must be one of {', '.join(MEMBER_LOOKUP_METHODS)}, "
                          f"got {member_lookup!r}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        defaults = {
            'ldap': {
                'user_search_base': '',
                'group_search_base': '',
                'user_filter': '(&(objectCategory=person)(objectClass=user))',
                'group_filter': '(objectClass=group)',
                'connection_timeout': 10,
                'receive_timeout': 30,
                'page_size': 1000,
            },
            'schema': {
                'id_attribute': 'objectGUID',
                'sid_attribute': 'objectSid',
                'account_attribute': 'sAMAccountName',
                'group_name_attribute': 'cn',
                'member_attribute': 'member',
                'member_of_attribute': 'memberOf',
                'slot_attribute_prefix': 'extensionAttribute',
                'member_lookup': 'memberof',
            },
            'sync': {
                'filter_slot': None,
                'scope_slot': None,
                'group_name': None,
                'dry_run': False,
                'pass_through': False,
                'confirm': False,
                'workers': 1,
            },
            'logging': {
                'level': 'INFO',
                'log_dir': 'logs',
                'rotation': 'daily',
                'retention_days': 7,
                'audit_file': 'audit.log',
            },
            'error_handling': {
                'max_retries': 3,
                'retry_wait_seconds': 5,
            },
            'notifications': {
                'enable_email': False,
                'email_on_failure': True,
                'email_on_success': False,
                'smtp_port': 587,
                'smtp_tls': True,
            },
        }
        for section, section_defaults in defaults.items():
            section_config = self.config.get(section)
            if not isinstance(section_config, dict):
                section_config = self.config[section] = {}
            for key, value in section_defaults.items():
                section_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file
        overrides: Dotted-key overrides applied before validation

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path, overrides)
    return loader.load()


@dataclass(frozen=True)
class SyncSettings:
    """
    Read-only settings for one run.

    Built once from the validated configuration; search bases left empty in the
    file are filled from the directory's naming context after connecting.
    """
    query_slot: int
    filter_slot: Optional[int] = None
    scope_slot: Optional[int] = None
    group_name: Optional[str] = None
    user_search_base: str = ''
    group_search_base: str = ''
    user_filter: str = '(&(objectCategory=person)(objectClass=user))'
    group_filter: str = '(objectClass=group)'
    slot_attribute_prefix: str = 'extensionAttribute'
    group_name_attribute: str = 'cn'
    dry_run: bool = False
    pass_through: bool = False
    confirm: bool = False
    workers: int = 1

    def slot_attribute(self, slot: Optional[int]) -> Optional[str]:
        if slot is None:
            return None
        return f"{self.slot_attribute_prefix}{slot}"

    @property
    def query_attribute(self) -> str:
        return self.slot_attribute(self.query_slot)

    @property
    def filter_attribute(self) -> Optional[str]:
        return self.slot_attribute(self.filter_slot)

    @property
    def scope_attribute(self) -> Optional[str]:
        return self.slot_attribute(self.scope_slot)

    @property
    def group_attributes(self) -> List[str]:
        """Attributes to load when enumerating groups."""
        names = [self.group_name_attribute, self.query_attribute, self.filter_attribute, self.scope_attribute]
        return [name for name in names if name]

    def with_search_bases(self, default_base: str) -> 'SyncSettings':
        """Fill empty search bases with the directory's default naming context."""
        return replace(
            self,
            user_search_base=self.user_search_base or default_base,
            group_search_base=self.group_search_base or default_base,
        )


def build_settings(config: Dict[str, Any]) -> SyncSettings:
    """
    Freeze a validated configuration dictionary into SyncSettings.

    Args:
        config: Configuration as returned by load_config

    Returns:
        Immutable settings for the run
    """
    ldap_config = config.get('ldap', {})
    schema_config = config.get('schema', {})
    sync_config = config.get('sync', {})

    return SyncSettings(
        query_slot=sync_config['query_slot'],
        filter_slot=sync_config.get('filter_slot'),
        scope_slot=sync_config.get('scope_slot'),
        group_name=sync_config.get('group_name') or None,
        user_search_base=ldap_config.get('user_search_base') or '',
        group_search_base=ldap_config.get('group_search_base') or '',
        user_filter=ldap_config.get('user_filter', SyncSettings.user_filter),
        group_filter=ldap_config.get('group_filter', SyncSettings.group_filter),
        slot_attribute_prefix=schema_config.get('slot_attribute_prefix', SyncSettings.slot_attribute_prefix),
        group_name_attribute=schema_config.get('group_name_attribute', SyncSettings.group_name_attribute),
        dry_run=bool(sync_config.get('dry_run', False)),
        pass_through=bool(sync_config.get('pass_through', False)),
        confirm=bool(sync_config.get('confirm', False)),
        workers=sync_config.get('workers', 1),
    )
