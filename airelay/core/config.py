"""
Configuration management for AI Relay.

Handles environment variables, defaults, and configuration validation
for the provider dispatch layer.
"""

import os
from typing import Optional, Dict, Any, List, Callable
from dataclasses import dataclass, field
from pathlib import Path


def mask_key(key: Optional[str]) -> str:
    """Mask an API key so it can be logged safely."""
    if not key:
        return "<none>"
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}...{key[-4:]}"


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _split_keys(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


# Settings files and environment variables hand these over as text
NUMERIC_SETTINGS: Dict[str, Callable[[Any], Any]] = {
    "temperature": float,
    "max_tokens": int,
    "request_timeout": float,
    "queue_delay": float,
    "max_retries_per_key": int,
    "retry_base_delay": float,
}


def cast_setting(name: str, value: Any) -> Any:
    """
    Convert a raw setting value to the type Config expects.

    Unknown names and None pass through untouched.

    Raises:
        ValueError: If the value cannot be converted
    """
    if value is None:
        return value
    if name == "enforce_rate_limit":
        return _parse_bool(value)
    cast = NUMERIC_SETTINGS.get(name)
    if cast is None:
        return value
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if cast is int and isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{name} must be a whole number, got {value!r}")
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class Config:
    """Configuration class for AI Relay with environment variable support."""

    # Environment detection
    ci_mode: bool = field(default=False)

    # Logging configuration
    log_level: str = field(default="INFO")
    log_format: str = field(default="text")
    logs_dir: Optional[Path] = field(default=None)

    # Provider selection, as handed over by the settings panel
    provider: str = field(default="openai")
    api_keys: List[str] = field(default_factory=list)
    model: Optional[str] = field(default=None)
    temperature: float = field(default=0.7)
    max_tokens: int = field(default=2048)
    base_url: Optional[str] = field(default=None)

    # Dispatch behaviour
    request_timeout: float = field(default=60.0)
    enforce_rate_limit: bool = field(default=True)
    queue_delay: float = field(default=0.1)
    max_retries_per_key: int = field(default=1)
    retry_base_delay: float = field(default=0.3)

    def __post_init__(self):
        """Post-initialization normalization."""
        if os.getenv("CI", "").lower() == "true" and self.ci_mode is False:
            self.ci_mode = True

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if self.log_level.upper() == "WARN":
            self.log_level = "WARNING"
        if self.log_level.upper() not in valid_log_levels:
            self.log_level = "INFO"
        else:
            self.log_level = self.log_level.upper()

        # JSON lines in CI unless explicitly set otherwise
        if self.ci_mode and self.log_format == "text":
            self.log_format = "json"

        self.provider = self.provider.strip().lower()
        if isinstance(self.api_keys, str):
            self.api_keys = _split_keys(self.api_keys)
        else:
            keys = self.api_keys if isinstance(self.api_keys, (list, tuple)) else [self.api_keys]
            self.api_keys = [str(k).strip() for k in keys if k is not None and str(k).strip()]

        # Values that fail to convert stay as given so validate() can report them
        for name in (*NUMERIC_SETTINGS, "enforce_rate_limit"):
            try:
                setattr(self, name, cast_setting(name, getattr(self, name)))
            except ValueError:
                pass

        if self.logs_dir is not None:
            self.logs_dir = Path(self.logs_dir)

    @property
    def is_ci_mode(self) -> bool:
        """Check if running in CI environment."""
        return self.ci_mode

    @property
    def debug_enabled(self) -> bool:
        """Check if debug logging is enabled."""
        return self.log_level == "DEBUG"

    @property
    def key_ring(self) -> Optional[List[str]]:
        """API keys in fallback order, or None when no key is configured."""
        return list(self.api_keys) if self.api_keys else None

    def get_log_file_path(self) -> Optional[Path]:
        """Get the main log file path."""
        if self.logs_dir is None:
            return None
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        return self.logs_dir / "airelay.log"

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for logging."""
        return {
            "ci_mode": self.ci_mode,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "logs_dir": str(self.logs_dir) if self.logs_dir else None,
            "provider": self.provider,
            "api_keys": [mask_key(k) for k in self.api_keys],
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "base_url": self.base_url,
            "request_timeout": self.request_timeout,
            "enforce_rate_limit": self.enforce_rate_limit,
            "queue_delay": self.queue_delay,
            "max_retries_per_key": self.max_retries_per_key,
            "retry_base_delay": self.retry_base_delay,
        }

    @classmethod
    def from_env(cls, **overrides: Any) -> "Config":
        """Create configuration from environment variables."""
        ci = os.getenv("CI", "").lower() == "true"
        values: Dict[str, Any] = {
            "ci_mode": ci,
            "log_level": os.getenv("AIRELAY_LOG_LEVEL", "INFO"),
            "log_format": os.getenv("AIRELAY_LOG_FORMAT", "json" if ci else "text"),
            "provider": os.getenv("AIRELAY_PROVIDER", "openai"),
            "model": os.getenv("AIRELAY_MODEL") or None,
            "base_url": os.getenv("AIRELAY_BASE_URL") or None,
        }

        keys_env = os.getenv("AIRELAY_API_KEYS")
        single_key_env = os.getenv("AIRELAY_API_KEY")
        if keys_env:
            values["api_keys"] = _split_keys(keys_env)
        elif single_key_env:
            values["api_keys"] = [single_key_env]

        logs_env = os.getenv("AIRELAY_LOGS_DIR")
        if logs_env:
            values["logs_dir"] = Path(logs_env)

        typed_env = {
            "temperature": "AIRELAY_TEMPERATURE",
            "max_tokens": "AIRELAY_MAX_TOKENS",
            "request_timeout": "AIRELAY_REQUEST_TIMEOUT",
            "enforce_rate_limit": "AIRELAY_ENFORCE_RATE_LIMIT",
        }
        for name, env_name in typed_env.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            try:
                values[name] = cast_setting(name, raw)
            except ValueError:
                # Unparseable environment values fall back to the default
                continue

        values.update(overrides)
        return cls(**values)

    def validate(self) -> None:
        """Validate configuration and raise ValidationError if invalid."""
        from .exceptions import ValidationError
        from ..providers.types import ProviderName, KEYLESS_PROVIDERS

        errors = []

        valid_providers = [p.value for p in ProviderName]
        if self.provider not in valid_providers:
            errors.append(
                f"Invalid provider: {self.provider}. Must be one of {valid_providers}"
            )
        elif not self.api_keys and ProviderName(self.provider) not in KEYLESS_PROVIDERS:
            errors.append(f"API key is required for provider: {self.provider}")

        not_numbers = [name for name in NUMERIC_SETTINGS if not _is_number(getattr(self, name))]
        for name in not_numbers:
            errors.append(f"Invalid {name}: {getattr(self, name)!r}. Must be a number")

        def checked(name: str) -> bool:
            return name not in not_numbers

        if checked("temperature") and not 0 <= self.temperature <= 2:
            errors.append(f"Invalid temperature: {self.temperature}. Must be between 0 and 2")

        if checked("max_tokens") and self.max_tokens <= 0:
            errors.append(f"Invalid max_tokens: {self.max_tokens}. Must be positive")

        if checked("request_timeout") and self.request_timeout <= 0:
            errors.append(f"Invalid request_timeout: {self.request_timeout}. Must be positive")

        if checked("max_retries_per_key") and self.max_retries_per_key < 0:
            errors.append("max_retries_per_key must be non-negative")

        delays = [
            getattr(self, name) for name in ("retry_base_delay", "queue_delay") if checked(name)
        ]
        if any(delay < 0 for delay in delays):
            errors.append("Delays must be non-negative")

        if self.log_format not in ("text", "json"):
            errors.append(f"Invalid log format: {self.log_format}. Must be 'text' or 'json'")

        if errors:
            message = "Configuration validation failed: " + "; ".join(errors)
            raise ValidationError(
                message,
                validation_type="config",
                violations=errors,
            )
