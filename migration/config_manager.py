"""Configuration management for pool migrations."""

import os
import json
import logging
import re
from typing import Dict, Any, Optional
from pathlib import Path
from dataclasses import dataclass, asdict, fields
from enum import Enum

import yaml


logger = logging.getLogger(__name__)

POOL_NAME_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_.:-]*$')


class ConfigFormat(Enum):
    """Supported configuration file formats."""
    JSON = "json"
    YAML = "yaml"
    ENV = "env"


@dataclass
class MigrationConfig:
    """Migration configuration data structure."""
    pool_name: str = "homePool"
    poll_interval_seconds: int = 10
    maintenance_window_seconds: int = 300
    maintenance_file: str = "/var/lib/pool-migration/inhibit-all-cron"
    state_dir: str = "/var/lib/pool-migration"
    replace_attempts: int = 3
    replace_retry_wait_seconds: int = 5
    max_command_timeout: int = 900
    log_level: str = "INFO"
    dry_run: bool = False


class ConfigManager:
    """Manages configuration loading, validation, and persistence."""

    # Environment variable mappings
    ENV_MAPPINGS = {
        'MIGRATION_POOL_NAME': 'pool_name',
        'MIGRATION_POLL_INTERVAL': 'poll_interval_seconds',
        'MIGRATION_MAINTENANCE_SECONDS': 'maintenance_window_seconds',
        'MAINTENANCE_MODE_FILE': 'maintenance_file',
        'MIGRATION_STATE_DIR': 'state_dir',
        'ZPOOL_REPLACE_ATTEMPTS': 'replace_attempts',
        'ZPOOL_REPLACE_RETRY_WAIT': 'replace_retry_wait_seconds',
        'MAX_COMMAND_TIMEOUT': 'max_command_timeout',
        'LOG_LEVEL': 'log_level',
        'MIGRATION_DRY_RUN': 'dry_run',
    }

    INT_KEYS = {
        'poll_interval_seconds',
        'maintenance_window_seconds',
        'replace_attempts',
        'replace_retry_wait_seconds',
        'max_command_timeout',
    }

    def __init__(self, config_file_path: Optional[str] = None):
        """
        Initialize the ConfigManager.

        Args:
            config_file_path: Optional path to a .json, .yaml/.yml or env-style file
        """
        self.config_file_path = config_file_path
        self._config: Optional[MigrationConfig] = None
        self._config_cache_valid = False

    def load_config(self) -> MigrationConfig:
        """
        Load configuration from defaults, the config file and environment variables.

        Returns:
            MigrationConfig object with loaded configuration

        Raises:
            ValueError: If the file cannot be parsed or a value is invalid
        """
        if self._config_cache_valid and self._config:
            return self._config

        config_dict = asdict(MigrationConfig())

        if self.config_file_path and os.path.exists(self.config_file_path):
            config_dict.update(self._load_config_file(self.config_file_path))

        # Environment wins over the file
        config_dict.update(self._load_from_environment())

        self._config = MigrationConfig(**config_dict)
        self._validate_config(self._config)

        self._config_cache_valid = True
        logger.info("Configuration loaded successfully")

        return self._config

    def save_config(self, config: MigrationConfig, file_path: Optional[str] = None) -> bool:
        """
        Save configuration to file. The format follows the file extension.

        Returns:
            True if successful, False otherwise
        """
        target_path = file_path or self.config_file_path
        if not target_path:
            logger.error("No config file path specified for saving")
            return False

        config_dict = asdict(config)
        path_obj = Path(target_path)
        format_type = self._detect_format(path_obj)

        try:
            path_obj.parent.mkdir(parents=True, exist_ok=True)

            if format_type == ConfigFormat.JSON:
                with open(target_path, 'w') as f:
                    json.dump(config_dict, f, indent=2)
            elif format_type == ConfigFormat.YAML:
                with open(target_path, 'w') as f:
                    yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)
            else:
                self._save_as_env_file(config_dict, target_path)
        except OSError as e:
            logger.error(f"Error saving configuration to {target_path}: {e}")
            return False

        logger.info(f"Configuration saved to {target_path}")
        return True

    def reload_config(self) -> MigrationConfig:
        """Force reload configuration from sources."""
        self._config_cache_valid = False
        return self.load_config()

    def _detect_format(self, path_obj: Path) -> ConfigFormat:
        suffix = path_obj.suffix.lower()
        if suffix == '.json':
            return ConfigFormat.JSON
        if suffix in {'.yaml', '.yml'}:
            return ConfigFormat.YAML
        return ConfigFormat.ENV

    def _load_config_file(self, file_path: str) -> Dict[str, Any]:
        """
        Load configuration from file.

        Raises:
            ValueError: If the file is not valid for its format
        """
        format_type = self._detect_format(Path(file_path))

        try:
            if format_type == ConfigFormat.ENV:
                return self._load_env_file(file_path)

            with open(file_path, 'r') as f:
                if format_type == ConfigFormat.JSON:
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f) or {}
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            logger.error(f"Error loading config file {file_path}: {e}")
            raise ValueError(f"Invalid config file {file_path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Config file {file_path} must contain a mapping")

        known = {f.name for f in fields(MigrationConfig)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {sorted(unknown)}")

        return {key: self._coerce(key, value) for key, value in data.items() if key in known}

    def _load_env_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from an environment-style file."""
        config = {}

        with open(file_path, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    key = key.strip()
                    value = value.strip().strip('"\'')

                    if key in self.ENV_MAPPINGS:
                        config_key = self.ENV_MAPPINGS[key]
                        config[config_key] = self._coerce(config_key, value)

        return config

    def _save_as_env_file(self, config_dict: Dict[str, Any], file_path: str) -> None:
        reverse_mappings = {v: k for k, v in self.ENV_MAPPINGS.items()}

        with open(file_path, 'w') as f:
            f.write("# Pool Migration Configuration File\n")
            f.write("# Generated automatically - modify with care\n\n")

            for config_key, value in config_dict.items():
                if config_key in reverse_mappings:
                    f.write(f"{reverse_mappings[config_key]}={self._format_env_value(value)}\n")

    def _load_from_environment(self) -> Dict[str, Any]:
        config = {}

        for env_key, config_key in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_key)
            if env_value is not None:
                config[config_key] = self._coerce(config_key, env_value)

        return config

    def _coerce(self, config_key: str, value: Any) -> Any:
        """
        Convert a raw file or environment value to the field's type.

        Raises:
            ValueError: If an integer field is not a valid integer
        """
        if config_key == 'dry_run':
            if isinstance(value, bool):
                return value
            return str(value).lower() in {'true', '1', 'yes', 'on'}

        if config_key in self.INT_KEYS:
            if isinstance(value, bool):
                raise ValueError(f"Invalid integer for {config_key}: {value}")
            try:
                return int(value)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid integer for {config_key}: {value}") from e

        return str(value)

    def _format_env_value(self, value: Any) -> str:
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return str(value)

    def _validate_config(self, config: MigrationConfig) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        for key in sorted(self.INT_KEYS):
            if getattr(config, key) <= 0:
                raise ValueError(f"{key} must be positive")

        valid_log_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if config.log_level.upper() not in valid_log_levels:
            raise ValueError(f"Invalid log level: {config.log_level}")

        if not POOL_NAME_PATTERN.match(config.pool_name):
            raise ValueError(f"Invalid pool name: {config.pool_name}")

        for path in (config.maintenance_file, config.state_dir):
            if not os.path.isabs(path):
                raise ValueError(f"Path must be absolute: {path}")

        logger.debug("Configuration validation passed")
