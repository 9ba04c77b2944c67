"""
Configuration Management for the TensorTours client core.

This module handles client configuration including the backend API URL,
identity provider settings, session and cache tuning, with support for
configuration files and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser

from tourshared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)


def default_config_directory() -> Path:
    """Per-user configuration directory (XDG aware)."""
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        return Path(xdg_config) / 'tensortours'
    return Path.home() / '.tensortours'


class ClientConfiguration:
    """
    Configuration manager for the TensorTours client.

    Supports configuration from:
    1. Overrides set at runtime, e.g. from command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    ENV_MAPPINGS = {
        'TENSORTOURS_API_URL': ('api', 'base_url'),
        'TENSORTOURS_API_TIMEOUT': ('api', 'timeout'),
        'TENSORTOURS_PREVIEW_URL': ('preview', 'content_url'),
        'TENSORTOURS_COGNITO_REGION': ('identity', 'region'),
        'TENSORTOURS_USER_POOL_ID': ('identity', 'user_pool_id'),
        'TENSORTOURS_CLIENT_ID': ('identity', 'client_id'),
        'TENSORTOURS_LOG_LEVEL': ('logging', 'level'),
        'TENSORTOURS_STORAGE_DIR': ('storage', 'directory'),
    }

    def __init__(self, config_file: Optional[str] = None, load_environment: bool = True):
        self._config_file = config_file or str(default_config_directory() / 'client.conf')
        self._load_environment = load_environment
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            try:
                self._load_from_file()
                logger.info(f"Configuration loaded from: {self._config_file}")
            except Exception as e:
                logger.warning(f"Failed to load configuration file: {e}")
        else:
            logger.debug(f"Configuration file not found, using defaults: {self._config_file}")

        if self._load_environment:
            self._load_from_environment()

        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        config.read(self._config_file)

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # JSON for numbers, booleans and lists; plain strings otherwise
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            section_data = self._config_data.setdefault(section, {})
            if value.lower() in ('true', 'false'):
                section_data[key] = value.lower() == 'true'
            elif value.isdigit():
                section_data[key] = int(value)
            else:
                section_data[key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'api': {
                'base_url': 'https://api.tensortours.com',
                'timeout': 30.0,
            },
            'preview': {
                'content_url': 'https://preview.tensortours.com',
            },
            'identity': {
                'region': 'us-west-2',
                'user_pool_id': None,
                'client_id': None,
            },
            'session': {
                'refresh_buffer_seconds': 300,
                'auto_refresh': True,
            },
            'cache': {
                'ttl_seconds': 300,
                'max_distance_meters': 300.0,
                'tour_cache_size': 500,
            },
            'storage': {
                'service_name': 'tensortours-client',
                'directory': str(default_config_directory()),
            },
            'logging': {
                'level': 'INFO',
                'format': 'standard',
                'file': None,
                'audit_file': None,
            },
        }

        for section, section_defaults in defaults.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                if key not in section_data:
                    section_data[key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        value = self._config_data.get(section, {}).get(config_key, default)
        return default if value is None else value

    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value using 'section.key' notation."""
        if '.' not in key:
            raise ConfigurationError(f"Configuration key must be 'section.key': {key}",
                                     ErrorCode.CONFIG_INVALID_VALUE, config_key=key)
        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def save_configuration(self) -> None:
        """Save current configuration to file."""
        config = ConfigParser()
        for section_name, section_data in self._config_data.items():
            config.add_section(section_name)
            for key, value in section_data.items():
                if value is None:
                    continue
                if isinstance(value, str):
                    config.set(section_name, key, value)
                else:
                    config.set(section_name, key, json.dumps(value))

        config_path = Path(self._config_file)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            config.write(f)

        logger.info(f"Configuration saved to: {self._config_file}")

    # Convenience methods for common configuration values

    def get_api_base_url(self) -> str:
        return str(self.get_config('api.base_url')).rstrip('/')

    def get_api_timeout(self) -> float:
        return float(self.get_config('api.timeout', 30.0))

    def get_preview_content_url(self) -> str:
        return str(self.get_config('preview.content_url')).rstrip('/')

    def get_cognito_region(self) -> str:
        return self.get_config('identity.region', 'us-west-2')

    def get_user_pool_id(self) -> Optional[str]:
        return self.get_config('identity.user_pool_id')

    def get_client_id(self) -> Optional[str]:
        return self.get_config('identity.client_id')

    def require_identity_settings(self) -> Dict[str, str]:
        """Identity provider settings; raises if the client id is missing."""
        client_id = self.get_client_id()
        if not client_id:
            raise ConfigurationError(
                "Identity provider client id is not configured",
                ErrorCode.CONFIG_MISSING_REQUIRED_SETTING,
                config_key='identity.client_id'
            )
        return {
            'region': self.get_cognito_region(),
            'user_pool_id': self.get_user_pool_id() or '',
            'client_id': client_id,
        }

    def get_refresh_buffer_seconds(self) -> int:
        return int(self.get_config('session.refresh_buffer_seconds', 300))

    def is_auto_refresh_enabled(self) -> bool:
        return bool(self.get_config('session.auto_refresh', True))

    def get_cache_ttl_seconds(self) -> int:
        return int(self.get_config('cache.ttl_seconds', 300))

    def get_cache_max_distance_meters(self) -> float:
        return float(self.get_config('cache.max_distance_meters', 300.0))

    def get_tour_cache_size(self) -> int:
        return int(self.get_config('cache.tour_cache_size', 500))

    def get_storage_service_name(self) -> str:
        return self.get_config('storage.service_name', 'tensortours-client')

    def get_storage_directory(self) -> Path:
        return Path(self.get_config('storage.directory', str(default_config_directory())))

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file')
