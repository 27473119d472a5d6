"""YAML configuration for ScribeLink.

Values missing from the file fall back to DEFAULTS; relative paths are
resolved against the directory holding the config file.
"""

import os
import copy
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
import logging

from ..models.audio import AudioFormat

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "scribelink.yaml"

DEFAULTS: Dict[str, Any] = {
    "audio": {"sample_rate": 16000, "channels": 1, "bits_per_sample": 16, "chunk_size": 1024},
    "segmenter": {"segment_duration_seconds": 5, "poll_interval_seconds": 2.0},
    "upload": {
        "max_retry_attempts": 3,
        "retry_delay_seconds": 2.0,
        "poll_interval_seconds": 2.0,
        "request_timeout_seconds": 30.0,
        "stuck_threshold_seconds": 120.0,
    },
    "backend": {"api_version": "v1"},
    "storage": {"data_directory": "data", "verified_retention_days": 7},
    "logging": {"level": "INFO", "console_output": True},
}

# Keys holding filesystem paths
PATH_KEYS = ("storage.data_directory", "logging.file_path")


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ScribeLinkConfig:
    """ScribeLink configuration loader."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to YAML config file. If None, looks for scribelink.yaml
                        in the current directory.
        """
        self.config_file = Path(config_path) if config_path else Path.cwd() / DEFAULT_CONFIG_FILENAME
        if not self.config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_file}")

        logger.info(f"Loading configuration from: {self.config_file}")
        self.config = _merge(DEFAULTS, self._read_file())
        for key_path in PATH_KEYS:
            self._resolve_path(key_path)
        logger.info("Configuration loaded successfully")

    def _read_file(self) -> Dict[str, Any]:
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")
        except OSError as e:
            raise ValueError(f"Failed to load configuration: {e}")

        if not loaded:
            raise ValueError("Configuration file is empty")
        if not isinstance(loaded, dict):
            raise ValueError("Configuration file must contain a mapping at the top level")
        return loaded

    def _resolve_path(self, key_path: str) -> None:
        value = self.get(key_path)
        if value and not os.path.isabs(value):
            self.set(key_path, str(self.config_file.parent / value))

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'upload.max_retry_attempts').

        Args:
            key_path: Dot-separated key path
            default: Returned when any part of the path is missing

        Returns:
            Configuration value or default
        """
        node = self.config
        for key in key_path.split('.'):
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def set(self, key_path: str, value: Any) -> None:
        """Set configuration value using dot notation, creating intermediate sections."""
        *parents, leaf = key_path.split('.')
        node = self.config
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = value
        logger.debug(f"Configuration key '{key_path}' set to: {value}")

    def get_audio_format(self) -> AudioFormat:
        """Get the PCM format the capture layer records with."""
        return AudioFormat(
            sample_rate=int(self.get('audio.sample_rate')),
            channels=int(self.get('audio.channels')),
            bits_per_sample=int(self.get('audio.bits_per_sample')),
        )

    def get_backend_url(self) -> str:
        """Get backend base URL - CRASHES if not configured."""
        base_url = self.get('backend.base_url')
        if not base_url:
            raise ValueError(f"Backend base URL not configured in {self.config_file.name}")
        return str(base_url).rstrip('/')

    def get_data_directory(self) -> str:
        return str(Path(self.get('storage.data_directory')).absolute())
