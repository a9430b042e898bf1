"""
Configuration loading and management for Distribution List Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from dl_sync.models import GroupAttribute

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Base class for configuration problems."""
    pass


class ConfigMissing(ConfigurationError):
    """Raised when no configuration file can be found."""
    pass


class InvalidConfig(ConfigurationError):
    """Raised when configuration is malformed or missing required fields."""
    pass


GROUP_SCOPES = ('global', 'domain_local', 'universal')
GROUP_CATEGORIES = ('distribution', 'security')
HISTORY_GRANULARITIES = ('run', 'change')


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.bind_password': 'DIRECTORY_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
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
            ConfigMissing: If the config file does not exist
            InvalidConfig: If the file cannot be parsed or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigMissing(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise InvalidConfig(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise InvalidConfig(f"Configuration file is empty or not a mapping: {self.config_path}")

        # Apply environment variable overrides
        self._apply_env_overrides()

        # Validate configuration
        self._validate()

        # Apply defaults
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
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        # Directory connection
        directory_config = self.config.get('directory') or {}
        for field in ['server_url', 'bind_dn', 'bind_password', 'base_dn']:
            if not directory_config.get(field):
                errors.append(f"Missing required directory field: {field}")

        # Target group
        group_config = self.config.get('group') or {}
        for field in ['name', 'path', 'mail']:
            if not group_config.get(field):
                errors.append(f"Missing required group field: {field}")

        scope = str(group_config.get('scope', 'universal')).lower()
        if scope not in GROUP_SCOPES:
            errors.append(f"Invalid group scope '{scope}', expected one of {', '.join(GROUP_SCOPES)}")

        category = str(group_config.get('category', 'distribution')).lower()
        if category not in GROUP_CATEGORIES:
            errors.append(f"Invalid group category '{category}', expected one of {', '.join(GROUP_CATEGORIES)}")

        attributes = group_config.get('attributes') or {}
        if not isinstance(attributes, dict):
            errors.append("group.attributes must be a mapping of attribute name to value")
        else:
            for name in attributes:
                if GroupAttribute.from_name(name) is None:
                    errors.append(f"Unsupported group attribute: {name}")

        # Roster
        roster_config = self.config.get('roster') or {}
        if not roster_config.get('input_path'):
            errors.append("Missing required roster field: input_path")

        columns = roster_config.get('columns')
        if not columns or not isinstance(columns, list):
            errors.append("roster.columns must be a non-empty list of column names")
        else:
            email_column = roster_config.get('email_column', 'Email')
            if email_column not in columns:
                errors.append(f"roster.email_column '{email_column}' must be one of roster.columns")

        # History
        history_config = self.config.get('history') or {}
        granularity = history_config.get('granularity', 'run')
        if granularity not in HISTORY_GRANULARITIES:
            errors.append(f"Invalid history granularity '{granularity}', expected 'run' or 'change'")

        if errors:
            raise InvalidConfig("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # Directory defaults
        directory_defaults = {
            'use_ssl': str(self.config['directory']['server_url']).lower().startswith('ldaps://'),
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 30
        }
        self._merge_defaults('directory', directory_defaults)

        # Group defaults
        group_config = self._merge_defaults('group', {
            'scope': 'universal',
            'category': 'distribution',
        })
        group_config['scope'] = str(group_config['scope']).lower()
        group_config['category'] = str(group_config['category']).lower()
        group_config['attributes'] = group_config.get('attributes') or {}

        # Roster defaults
        self._merge_defaults('roster', {
            'output_dir': 'output',
            'email_column': 'Email',
            'retention_days': 30
        })

        # Logging defaults
        self._merge_defaults('logging', {
            'level': 'INFO',
            'log_dir': 'logs',
            'retention_days': 30,
            'console_output': True,
            'console_level': 'WARNING'
        })

        # Error handling defaults
        self._merge_defaults('error_handling', {
            'max_retries': 3,
            'retry_wait_seconds': 5
        })

        # Notification defaults
        self._merge_defaults('notifications', {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': True,
            'smtp_port': 587,
            'smtp_tls': True,
            'subject': 'Distribution List Sync',
            'timeout': 30
        })

        # History defaults
        self._merge_defaults('history', {
            'enabled': False,
            'database': 'history.db',
            'granularity': 'run'
        })

    def _merge_defaults(self, section: str, defaults: Dict[str, Any]) -> Dict[str, Any]:
        """Fill in missing keys of a config section."""
        section_config = self.config.get(section) or {}
        self.config[section] = section_config
        for key, value in defaults.items():
            section_config.setdefault(key, value)
        return section_config


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
