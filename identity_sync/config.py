"""
Configuration loading and management for Directory Identity Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'sync.service_account.password': 'LDAP_SERVICE_PASSWORD',
        'store.auth.password': 'STORE_PASSWORD',
        'store.auth.token': 'STORE_TOKEN',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    DEFAULTS = {
        'ldap': {
            'base_dn': '',
            'domain_suffix': '',
            'use_ssl': None,
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 10,
            'page_size': 1000,
            'user_filter': '(&(objectCategory=person)(objectClass=user))',
            'attributes': [
                'sAMAccountName', 'userPrincipalName', 'objectGUID', 'userAccountControl',
                'givenName', 'sn', 'displayName', 'mail', 'cn',
            ],
        },
        'sync': {
            'enabled': False,
            'security_groups': '',
            'disable_users': False,
            'notify_users': True,
        },
        'store': {
            'module': 'rest',
            'verify_ssl': True,
            'timeout': 30,
        },
        'logging': {
            'level': 'INFO',
            'bulk_level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
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

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

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

        ldap_config = self.config.get('ldap') or {}
        if not ldap_config.get('server_url'):
            errors.append("Missing required LDAP field: server_url")

        sync_config = self.config.get('sync') or {}
        groups = sync_config.get('security_groups', '')
        if groups is not None and not isinstance(groups, (str, list)):
            errors.append("sync.security_groups must be a string or a list")

        store_config = self.config.get('store') or {}
        module = store_config.get('module', 'rest')
        if not module:
            errors.append("Missing required store field: module")
        if module == 'rest' and not store_config.get('base_url'):
            errors.append("Missing required store field: base_url")

        auth = store_config.get('auth')
        if auth and not auth.get('method'):
            errors.append("Missing auth method for store")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        for section, defaults in self.DEFAULTS.items():
            section_config = self.config.get(section)
            if not isinstance(section_config, dict):
                section_config = {}
                self.config[section] = section_config
            for key, value in defaults.items():
                section_config.setdefault(key, list(value) if isinstance(value, list) else value)

        sync_config = self.config['sync']
        if isinstance(sync_config.get('security_groups'), list):
            sync_config['security_groups'] = ';'.join(sync_config['security_groups'])
        sync_config.setdefault('service_account', {})

        # The LDAP client and the store share the retry settings
        self.config['ldap'].setdefault('error_handling', self.config['error_handling'])
        self.config['store'].setdefault('error_handling', self.config['error_handling'])


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
