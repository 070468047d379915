"""
Type definitions for the provider dispatch system.
"""

import re
from enum import Enum
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from ..core.exceptions import ValidationError


class ProviderName(Enum):
    """Supported generative-AI providers."""

    GOOGLE = "google"
    OPENAI = "openai"
    GROQ = "groq"
    CLAUDE = "claude"
    COHERE = "cohere"
    HUGGINGFACE = "huggingface"
    TOGETHER = "together"
    LOCAL = "local"
    OLLAMA = "ollama"

    @classmethod
    def parse(cls, value: Any) -> "ProviderName":
        """Resolve a provider tag, accepting enum members or case-insensitive strings."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = [p.value for p in cls]
            raise ValidationError(
                f"Unsupported provider: {value}. Use one of: {valid}",
                validation_type="provider",
                violations=[f"unknown provider {value!r}"],
            )


# Providers that run without a credential
KEYLESS_PROVIDERS = frozenset({ProviderName.LOCAL, ProviderName.OLLAMA})

# Minimum spacing between two calls to the same provider, in milliseconds
MIN_INTERVAL_MS: Dict[ProviderName, int] = {
    ProviderName.GOOGLE: 1000,
    ProviderName.OPENAI: 2000,
    ProviderName.GROQ: 500,
    ProviderName.CLAUDE: 2000,
    ProviderName.LOCAL: 100,
    ProviderName.OLLAMA: 100,
}
DEFAULT_MIN_INTERVAL_MS = 1000


def min_interval_ms(provider: ProviderName) -> int:
    """Minimum interval for a provider, falling back to the default."""
    return MIN_INTERVAL_MS.get(provider, DEFAULT_MIN_INTERVAL_MS)


class ErrorClass(Enum):
    """Retry category of a failed provider attempt."""

    INVALID_CREDENTIAL = "invalid_credential"
    TRANSIENT = "transient"
    FATAL = "fatal"


_DATA_URI_PATTERN = re.compile(r"^data:(?P<mime>[^;,]*)(?:;base64)?,(?P<data>.*)$", re.DOTALL)


class ImageAttachment(BaseModel):
    """Inline image sent alongside a prompt, already stripped of any data URI prefix."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mime_type: str = Field("image/png", description="MIME type of the image")
    base64_data: str = Field(..., description="Base64 payload without a data: prefix")

    @field_validator("mime_type")
    @classmethod
    def validate_mime_type(cls, v):
        if not v or not v.strip():
            raise ValueError("Image MIME type cannot be empty")
        return v.strip()

    @field_validator("base64_data")
    @classmethod
    def validate_base64_data(cls, v):
        if not v or not v.strip():
            raise ValueError("Image data cannot be empty")
        if v.startswith("data:"):
            raise ValueError("Image data must not include a data: URI prefix")
        return v.strip()

    @classmethod
    def from_data_uri(cls, value: str, mime_type: Optional[str] = None) -> "ImageAttachment":
        """
        Normalize an uploaded image into an attachment.

        Accepts either ``data:<mime>;base64,<data>`` or a bare base64 payload.
        A missing MIME type falls back to ``mime_type`` and then ``image/png``.
        """
        match = _DATA_URI_PATTERN.match(value.strip())
        if match:
            mime = match.group("mime") or mime_type or "image/png"
            return cls(mime_type=mime, base64_data=match.group("data"))
        return cls(mime_type=mime_type or "image/png", base64_data=value)


class CanonicalRequest(BaseModel):
    """Provider-agnostic request consumed by every adapter."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    prompt: str = Field(..., description="User prompt")
    image: Optional[ImageAttachment] = Field(None, description="Optional inline image")
    model: Optional[str] = Field(None, description="Model override, provider default when unset")
    temperature: float = Field(0.7, ge=0, le=2, description="Sampling temperature")
    max_tokens: int = Field(2048, gt=0, description="Completion token budget")

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v):
        if not v or not v.strip():
            raise ValueError("Prompt cannot be empty")
        return v

    @field_validator("model")
    @classmethod
    def validate_model(cls, v):
        if v is not None and not v.strip():
            return None
        return v


def build_request(
    prompt: str,
    image: Any = None,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> CanonicalRequest:
    """
    Build a CanonicalRequest, converting pydantic failures to ValidationError.

    ``image`` may be an ImageAttachment, a data URI / base64 string, or a mapping
    with ``mime_type``/``base64_data`` (``mimeType``/``base64`` are accepted too).
    """
    try:
        values: Dict[str, Any] = {"prompt": prompt, "model": model}
        if temperature is not None:
            values["temperature"] = temperature
        if max_tokens is not None:
            values["max_tokens"] = max_tokens
        if image is not None:
            values["image"] = _coerce_image(image)
        return CanonicalRequest(**values)
    except PydanticValidationError as e:
        violations = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ValidationError(
            "Invalid request: " + "; ".join(violations),
            validation_type="request",
            violations=violations,
        ) from e


def _coerce_image(image: Any) -> ImageAttachment:
    if isinstance(image, ImageAttachment):
        return image
    if isinstance(image, str):
        return ImageAttachment.from_data_uri(image)
    if isinstance(image, dict):
        mime = image.get("mime_type") or image.get("mimeType")
        data = image.get("base64_data") or image.get("base64Data") or image.get("base64")
        if data is None:
            raise ValidationError(
                "Image mapping has no base64 payload",
                validation_type="request",
                violations=["image: missing base64 data"],
            )
        return ImageAttachment.from_data_uri(data, mime_type=mime)
    raise ValidationError(
        f"Unsupported image type: {type(image).__name__}",
        validation_type="request",
        violations=["image: unsupported type"],
    )


@dataclass(frozen=True)
class RequestOptions:
    """Per-request transport overrides."""

    base_url: Optional[str] = None
    timeout: float = 60.0


@dataclass
class AttemptRecord:
    """One adapter call made while dispatching."""

    key_index: Optional[int]
    attempt: int
    error_class: Optional[ErrorClass] = None
    error: Optional[str] = None
    backoff: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error_class is None and self.error is None


@dataclass
class DispatchOutcome:
    """Result of a dispatch: a response text, or the last error observed."""

    provider: ProviderName
    text: Optional[str] = None
    error: Optional[Exception] = None
    attempts: List[AttemptRecord] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None and self.text is not None

    @classmethod
    def succeeded(
        cls, provider: ProviderName, text: str, attempts: List[AttemptRecord]
    ) -> "DispatchOutcome":
        return cls(provider=provider, text=text, attempts=attempts)

    @classmethod
    def failed(
        cls, provider: ProviderName, error: Exception, attempts: List[AttemptRecord]
    ) -> "DispatchOutcome":
        return cls(provider=provider, error=error, attempts=attempts)

    def unwrap(self) -> str:
        """Return the response text or raise the terminal error."""
        if self.error is not None:
            raise self.error
        return self.text

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "provider": self.provider.value,
            "success": self.success,
            "content_length": len(self.text) if self.text else 0,
            "error": str(self.error) if self.error else None,
            "attempts": [
                {
                    "key_index": a.key_index,
                    "attempt": a.attempt,
                    "error_class": a.error_class.value if a.error_class else None,
                    "backoff": a.backoff,
                }
                for a in self.attempts
            ],
        }
