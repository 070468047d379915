"""Core components for AI Relay."""

from .config import Config, mask_key
from .config_manager import ConfigManager
from .exceptions import (
    RelayError,
    ProviderError,
    MalformedResponseError,
    ProviderTransportError,
    ValidationError,
    ConfigurationError,
)
from .logging_config import setup_logging

__all__ = [
    "Config",
    "ConfigManager",
    "mask_key",
    "RelayError",
    "ProviderError",
    "MalformedResponseError",
    "ProviderTransportError",
    "ValidationError",
    "ConfigurationError",
    "setup_logging",
]
