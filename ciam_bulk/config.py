"""
Configuration loading and management for CIAM Bulk Tools.

This module loads the YAML configuration file, applies environment variable
overrides for secrets, validates required fields and fills in defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 20


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for secrets
    ENV_OVERRIDES = {
        'directory.client_secret': 'CIAM_CLIENT_SECRET',
        'directory.bind_password': 'LDAP_BIND_PASSWORD',
        'bulk.initial_password': 'CIAM_INITIAL_PASSWORD',
    }

    REQUIRED_DIRECTORY_FIELDS = {
        'graph': ['tenant_id', 'client_id', 'client_secret', 'issuer_domain'],
        'ldap': ['server_url', 'bind_dn', 'bind_password', 'user_base_dn'],
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
            raise ConfigurationError(f"Configuration root must be a mapping in {self.config_path}")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for secrets."""
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

        directory = self.config.get('directory', {})
        backend = str(directory.get('backend', '')).lower()
        if backend not in self.REQUIRED_DIRECTORY_FIELDS:
            errors.append(f"directory.backend must be one of {sorted(self.REQUIRED_DIRECTORY_FIELDS)}, "
                          f"got '{backend}'")
        else:
            for field in self.REQUIRED_DIRECTORY_FIELDS[backend]:
                if not directory.get(field):
                    errors.append(f"Missing required directory field: {field}")

        bulk = self.config.get('bulk', {})
        if not bulk.get('prefix'):
            errors.append("bulk.prefix must be a non-empty string")

        for field in ('batch_size', 'membership_chunk_size'):
            value = bulk.get(field)
            if not isinstance(value, int) or not 1 <= value <= MAX_BATCH_SIZE:
                errors.append(f"bulk.{field} must be an integer between 1 and {MAX_BATCH_SIZE}, got {value!r}")

        for field in ('create_delay_seconds', 'membership_delay_seconds', 'page_delay_seconds'):
            value = bulk.get(field)
            if not isinstance(value, (int, float)) or value < 0:
                errors.append(f"bulk.{field} must be a non-negative number, got {value!r}")

        for field in ('snapshot_every_pages', 'snapshot_shards'):
            value = bulk.get(field)
            if not isinstance(value, int) or value < 1:
                errors.append(f"bulk.{field} must be a positive integer, got {value!r}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory_defaults = {
            'backend': 'graph',
            'page_size': 100,
            'verify_ssl': True,
        }
        directory = self.config.setdefault('directory', {})
        for key, value in directory_defaults.items():
            directory.setdefault(key, value)

        bulk_defaults = {
            'prefix': 'test_user_',
            'batch_size': 20,
            'membership_chunk_size': 20,
            'create_delay_seconds': 0.2,
            'membership_delay_seconds': 1.0,
            'page_delay_seconds': 0,
            'initial_password': '',
            'force_change_password': False,
            'snapshot_dir': 'snapshots',
            'snapshot_name': 'users',
            'snapshot_every_pages': 50,
            'snapshot_shards': 10,
        }
        bulk = self.config.setdefault('bulk', {})
        for key, value in bulk_defaults.items():
            bulk.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'INFO',
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)


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
