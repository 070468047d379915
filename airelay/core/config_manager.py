"""
Configuration management system for AI Relay.

Loads the settings file written by the settings panel (YAML or JSON),
layers it over environment defaults, and hot-reloads it when it changes.
"""

import json
import logging
import threading
import time
from dataclasses import fields
from pathlib import Path
from typing import Dict, Any, Optional, List, Callable

import yaml
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from .config import Config
from .exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

# Settings panel spelling -> Config field
SETTINGS_ALIASES = {
    "apiKey": "api_keys",
    "api_key": "api_keys",
    "apiKeys": "api_keys",
    "maxTokens": "max_tokens",
    "baseUrl": "base_url",
    "requestTimeout": "request_timeout",
    "enforceRateLimit": "enforce_rate_limit",
    "logLevel": "log_level",
    "logFormat": "log_format",
}

_CONFIG_FIELDS = {f.name for f in fields(Config)}


class ConfigFileHandler(FileSystemEventHandler):
    """File system event handler for configuration hot-reloading."""

    def __init__(self, config_manager: "ConfigManager"):
        self.config_manager = config_manager
        self.last_reload = 0.0
        self.reload_debounce = 1.0  # 1 second debounce

    def on_modified(self, event):
        """Handle file modification events."""
        if event.is_directory:
            return

        if Path(event.src_path).name != self.config_manager.config_file_path.name:
            return

        current_time = time.time()
        if current_time - self.last_reload > self.reload_debounce:
            self.last_reload = current_time
            self.config_manager._trigger_reload()


def load_settings_file(path: Path) -> Dict[str, Any]:
    """
    Read a YAML or JSON settings file into Config keyword arguments.

    Unknown keys are ignored with a warning; panel-style camelCase keys are mapped
    onto their Config field names.

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            raw = json.loads(text) if text.strip() else {}
        else:
            raw = yaml.safe_load(text) or {}
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not load settings file {path}: {e}", config_path=str(path)) from e

    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Settings file {path} must contain a mapping, got {type(raw).__name__}",
            config_path=str(path),
        )

    values: Dict[str, Any] = {}
    for key, value in raw.items():
        name = SETTINGS_ALIASES.get(key, key)
        if name not in _CONFIG_FIELDS:
            logger.warning(f"Ignoring unknown setting '{key}' in {path}")
            continue
        if name == "api_keys" and isinstance(value, str):
            value = [value]
        if name == "logs_dir" and value is not None:
            value = Path(value)
        values[name] = value
    return values


class ConfigManager:
    """
    Configuration management with file loading, validation and hot-reloading.

    Environment variables supply the defaults; the settings file wins where it
    sets a value.
    """

    def __init__(self, config_file_path: Optional[Path] = None):
        self.config_file_path = Path(config_file_path or Path.cwd() / "airelay.yaml")

        self._config: Optional[Config] = None
        self._reload_callbacks: List[Callable[[Config], None]] = []
        self._observer: Optional[Observer] = None
        self._lock = threading.RLock()

    def get_config(self) -> Config:
        """Get current configuration, loading if necessary."""
        with self._lock:
            if self._config is None:
                self._config = self._load_config()
            return self._config

    def reload_config(self) -> Config:
        """Force reload configuration from files."""
        with self._lock:
            self._config = self._load_config()
            self._notify_reload_callbacks()
            return self._config

    def validate_config(self, config: Optional[Config] = None) -> List[str]:
        """
        Validate configuration and return list of validation errors.

        Args:
            config: Configuration to validate. If None, uses current config.

        Returns:
            List of validation error messages. Empty list if valid.
        """
        if config is None:
            config = self.get_config()

        try:
            config.validate()
        except ValidationError as e:
            return list(e.violations) or [str(e)]
        return []

    def save_config(self, config: Config) -> None:
        """Save configuration to the settings file, without API keys."""
        config_dict = config.to_dict()
        config_dict.pop("api_keys", None)
        config_dict.pop("ci_mode", None)

        with open(self.config_file_path, "w", encoding="utf-8") as f:
            if self.config_file_path.suffix.lower() == ".json":
                json.dump(config_dict, f, indent=2, default=str)
            else:
                yaml.safe_dump(config_dict, f, sort_keys=False)

    def start_hot_reload(self) -> None:
        """Start hot-reloading of the settings file."""
        if self._observer is not None:
            return

        watch_dir = self.config_file_path.parent
        if not watch_dir.exists():
            logger.warning(f"Settings directory {watch_dir} does not exist, hot reload disabled")
            return

        self._observer = Observer()
        self._observer.schedule(ConfigFileHandler(self), str(watch_dir), recursive=False)
        self._observer.start()
        logger.info(f"Watching {self.config_file_path} for changes")

    def stop_hot_reload(self) -> None:
        """Stop hot-reloading of the settings file."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None

    def add_reload_callback(self, callback: Callable[[Config], None]) -> None:
        """Add callback to be called when configuration is reloaded."""
        self._reload_callbacks.append(callback)

    def remove_reload_callback(self, callback: Callable[[Config], None]) -> None:
        """Remove reload callback."""
        if callback in self._reload_callbacks:
            self._reload_callbacks.remove(callback)

    def _load_config(self) -> Config:
        """Load configuration from environment and the settings file."""
        overrides: Dict[str, Any] = {}
        if self.config_file_path.exists():
            overrides = load_settings_file(self.config_file_path)
        return Config.from_env(**overrides)

    def _trigger_reload(self) -> None:
        """Trigger configuration reload (called by file watcher)."""
        try:
            self.reload_config()
            logger.info(f"Reloaded settings from {self.config_file_path}")
        except ConfigurationError as e:
            # Keep serving the previous configuration until the file is fixed
            logger.error(f"Error reloading configuration: {e}")

    def _notify_reload_callbacks(self) -> None:
        """Notify all registered callbacks of configuration reload."""
        for callback in self._reload_callbacks:
            try:
                callback(self._config)
            except Exception as e:
                logger.error(f"Error in reload callback: {e}")
