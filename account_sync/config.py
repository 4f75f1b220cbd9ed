"""
Configuration loading and management for Account Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config.yaml'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive and frequently tuned fields
    ENV_OVERRIDES = {
        'provider.secret_key': 'PROVIDER_SECRET_KEY',
        'provider.base_url': 'PROVIDER_BASE_URL',
        'pacing.delay_ms': 'DELAY_MS',
        'pacing.retry_delay_ms': 'RETRY_DELAY_MS',
    }

    INTEGER_FIELDS = {'pacing.delay_ms', 'pacing.retry_delay_ms'}

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.explicit_path = bool(config_path or os.getenv('CONFIG_PATH'))
        self.config_path = config_path or os.getenv('CONFIG_PATH', DEFAULT_CONFIG_PATH)
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        A missing default config file is tolerated so that a run can be driven
        purely from environment variables. A missing file that was named
        explicitly is an error.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            if self.explicit_path:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.debug(f"No configuration file at {self.config_path}, using environment only")
            self.config = {}
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
        """Apply environment variable overrides."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if not env_value:
                continue
            if config_key in self.INTEGER_FIELDS:
                try:
                    env_value = int(env_value)
                except ValueError:
                    raise ConfigurationError(f"{env_var} must be an integer number of milliseconds, got {env_value!r}")
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

        provider_config = self.config.get('provider') or {}
        if not provider_config.get('secret_key'):
            errors.append("Missing provider secret key (set provider.secret_key or PROVIDER_SECRET_KEY)")

        pacing_config = self.config.get('pacing') or {}
        for field in ('delay_ms', 'retry_delay_ms', 'max_retry_delay_ms'):
            value = pacing_config.get(field)
            if value is not None and (not isinstance(value, (int, float)) or value < 0):
                errors.append(f"pacing.{field} must be a non-negative number")

        max_attempts = pacing_config.get('max_attempts')
        if max_attempts is not None and (not isinstance(max_attempts, int) or max_attempts < 1):
            errors.append("pacing.max_attempts must be a positive integer or omitted for unbounded retries")

        backoff = pacing_config.get('backoff')
        if backoff is not None and (not isinstance(backoff, (int, float)) or backoff < 1):
            errors.append("pacing.backoff must be a number >= 1")

        for field in ('update_batch_size', 'delete_batch_size', 'delete_limit'):
            value = (self.config.get('batch') or {}).get(field)
            if value is not None and (not isinstance(value, int) or value < 1):
                errors.append(f"batch.{field} must be a positive integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        provider_defaults = {
            'base_url': 'https://api.clerk.com/v1',
            'cursor_param': 'after_id',
            'timeout': 30,
            'verify_ssl': True
        }
        provider_config = self.config.setdefault('provider', {})
        for key, value in provider_defaults.items():
            provider_config.setdefault(key, value)

        # max_attempts None means rate limits are retried until they clear
        pacing_defaults = {
            'delay_ms': 1000,
            'retry_delay_ms': 10000,
            'max_attempts': None,
            'backoff': 1.0,
            'max_retry_delay_ms': 300000
        }
        pacing_config = self.config.setdefault('pacing', {})
        for key, value in pacing_defaults.items():
            pacing_config.setdefault(key, value)

        batch_defaults = {
            'update_batch_size': 200,
            'delete_batch_size': 50,
            'delete_limit': 200,
            'progress_every': 10
        }
        batch_config = self.config.setdefault('batch', {})
        for key, value in batch_defaults.items():
            batch_config.setdefault(key, value)

        paths_defaults = {
            'dataset': 'users.json',
            'errors_file': 'errors.json',
            'failure_log_dir': '.',
            'cursor_checkpoint': None
        }
        paths_config = self.config.setdefault('paths', {})
        for key, value in paths_defaults.items():
            paths_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'INFO'
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)


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
