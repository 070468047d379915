"""
Base exception classes for AI Relay.

Provides a hierarchy of exceptions for the failures that can occur while
dispatching a request to a generative-AI provider.
"""

from typing import Optional, Dict, Any


class RelayError(Exception):
    """Base exception class for all AI Relay errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class ProviderError(RelayError):
    """Raised when a provider answers with a non-2xx HTTP status."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        error_code: str = "PROVIDER_ERROR",
    ):
        super().__init__(message, error_code)
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.context.update(
            {
                "provider": provider,
                "status_code": status_code,
                "body": body[:500] if body else body,
            }
        )


class MalformedResponseError(ProviderError):
    """Raised when a 2xx response lacks the field the adapter extracts text from."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        field_path: Optional[str] = None,
    ):
        super().__init__(
            message,
            provider=provider,
            status_code=status_code,
            body=body,
            error_code="MALFORMED_RESPONSE",
        )
        self.field_path = field_path
        self.context["field_path"] = field_path


class ProviderTransportError(RelayError):
    """Raised when a provider call times out or the network fails."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message, "PROVIDER_TRANSPORT_FAILED")
        self.provider = provider
        self.reason = reason
        self.context.update(
            {
                "provider": provider,
                "reason": reason,
            }
        )


class ValidationError(RelayError):
    """Raised when validation fails."""

    def __init__(
        self,
        message: str,
        validation_type: Optional[str] = None,
        violations: Optional[list] = None,
    ):
        super().__init__(message, "VALIDATION_FAILED")
        self.validation_type = validation_type
        self.violations = violations or []
        self.context.update(
            {
                "validation_type": validation_type,
                "violations": violations,
            }
        )


class ConfigurationError(RelayError):
    """Raised when a settings file cannot be loaded."""

    def __init__(
        self,
        message: str,
        config_path: Optional[str] = None,
    ):
        super().__init__(message, "CONFIGURATION_FAILED")
        self.config_path = config_path
        self.context["config_path"] = config_path
