"""
Configuration management for LogKeeper.

Handles loading and merging configuration from:
- Default configuration file (config/default.yaml)
- An optional user configuration file
- Environment variables
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "default.yaml"

# Used when config/default.yaml is not shipped alongside an installed package
BUILTIN_DEFAULTS: Dict[str, Any] = {
    "data_dir": "./logs",
    "retention": {
        "max_segment_size": "10m",
        "max_segment_count": 3,
        "compress": True,
        "compression": "gzip",
    },
    "streams": {},
    "logging": {
        "level": "INFO",
        "format": "json",
    },
}


class Config:
    """Configuration manager for LogKeeper."""

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_file: Path to a YAML file merged over the defaults.
        """
        self._config: Dict[str, Any] = self._deep_merge({}, BUILTIN_DEFAULTS)
        self._load_default_config()

        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _load_default_config(self) -> None:
        if DEFAULT_CONFIG_PATH.exists():
            self._load_config_file(str(DEFAULT_CONFIG_PATH))

    def _load_config_file(self, config_file: str) -> None:
        """
        Load configuration from YAML file.

        Args:
            config_file: Path to YAML configuration file

        Raises:
            ValueError: If the document is not a mapping
        """
        with open(config_file, "r") as f:
            file_config = yaml.safe_load(f)

        if file_config is None:
            return

        if not isinstance(file_config, dict):
            raise ValueError(f"Configuration file {config_file} must contain a mapping")

        self._config = self._deep_merge(self._config, file_config)

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            elif isinstance(value, dict):
                result[key] = self._deep_merge({}, value)
            else:
                result[key] = value
        return result

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides."""
        if data_dir := os.getenv("LOGKEEPER_DATA_DIR"):
            self.set("data_dir", data_dir)

        if log_level := os.getenv("LOG_LEVEL"):
            self.set("logging.level", log_level)

        if log_format := os.getenv("LOG_FORMAT"):
            self.set("logging.format", log_format)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in dot notation (e.g., "retention.compress")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = self._config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in dot notation
            value: Value to set
        """
        keys = key.split(".")
        config = self._config
        for k in keys[:-1]:
            if k not in config or not isinstance(config[k], dict):
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def stream_options(self, stream_id: str) -> Dict[str, Any]:
        """
        Get the retention options for one stream.

        Per-stream entries under ``streams`` override the ``retention`` defaults
        key by key.

        Args:
            stream_id: Stream identifier

        Returns:
            Merged option mapping
        """
        defaults = self.get("retention", {}) or {}
        overrides = (self.get("streams", {}) or {}).get(stream_id) or {}
        return self._deep_merge(defaults, overrides)

    def stream_ids(self) -> list:
        """Get the ids of streams declared in the configuration."""
        return list((self.get("streams", {}) or {}).keys())

    def to_dict(self) -> Dict[str, Any]:
        """
        Get entire configuration as dictionary.

        Returns:
            Configuration dictionary
        """
        return self._deep_merge({}, self._config)


def load_config(config_file: Optional[str] = None) -> Config:
    """
    Build a configuration instance.

    Args:
        config_file: Optional configuration file path

    Returns:
        Configuration instance
    """
    return Config(config_file)
