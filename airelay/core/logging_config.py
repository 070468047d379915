"""
Logging configuration for AI Relay.

Every line carries the session id of the run that produced it, plus whatever
provider context (provider, masked key, attempt) the caller attached. CI runs
get JSON lines on the console; local runs get text, optionally mirrored to a
rotating file.
"""

import logging
import logging.handlers
import json
import sys
import time
from typing import Any, Dict, Optional, Type

from .config import Config


class SessionFormatter(logging.Formatter):
    """Base for the AI Relay formatters: session id, UTC record time and provider context."""

    # Record attributes lifted out of ``extra`` into their own field
    CONTEXT_FIELDS = ("provider", "model_name", "key", "attempt", "duration", "status")

    converter = time.gmtime

    def __init__(self, session_id: str):
        super().__init__()
        self.session_id = session_id

    @property
    def short_session(self) -> str:
        return self.session_id[:8]

    def timestamp(self, record: logging.LogRecord) -> str:
        return f"{self.formatTime(record, '%Y-%m-%dT%H:%M:%S')}.{int(record.msecs):03d}Z"

    def context(self, record: logging.LogRecord) -> Dict[str, Any]:
        return {
            attr: getattr(record, attr)
            for attr in self.CONTEXT_FIELDS
            if getattr(record, attr, None) is not None
        }


class StructuredFormatter(SessionFormatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.timestamp(record),
            "level": record.levelname,
            "component": record.name,
            "session_id": self.session_id,
            "message": record.getMessage(),
            **self.context(record),
        }
        metadata = getattr(record, "metadata", None)
        if metadata:
            entry["metadata"] = metadata
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack"] = self.formatStack(record.stack_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(SessionFormatter):
    """
    Single-line text for terminals, e.g.::

        [2024-05-01 10:00:00] INFO     airelay.providers.gateway [groq] | Response received (session: 1a2b3c4d) | attempts=1
    """

    def format(self, record: logging.LogRecord) -> str:
        head = f"[{self.formatTime(record, '%Y-%m-%d %H:%M:%S')}] {record.levelname:8} {record.name}"
        provider = getattr(record, "provider", None)
        if provider:
            head += f" [{provider}]"

        parts = [head, f"{record.getMessage()} (session: {self.short_session})"]
        metadata = getattr(record, "metadata", None)
        if metadata:
            parts.append(" ".join(f"{k}={v}" for k, v in metadata.items()))

        line = " | ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


FORMATTERS: Dict[str, Type[SessionFormatter]] = {
    "json": StructuredFormatter,
    "text": TextFormatter,
}


class ContextAdapter(logging.LoggerAdapter):
    """Attach fixed context to every record; per-call ``extra`` wins on conflicts."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def setup_logging(config: Config, session_id: str) -> logging.Logger:
    """
    Set up logging configuration based on environment and config.

    Args:
        config: Configuration object with logging settings
        session_id: Identifier used to correlate the log lines of one run

    Returns:
        Configured root logger
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    log_level = getattr(logging, config.log_level)
    root_logger.setLevel(log_level)

    formatter = FORMATTERS.get(config.log_format, TextFormatter)(session_id)

    # stderr, so answers printed on stdout stay clean
    handlers = [logging.StreamHandler(sys.stderr)]

    log_file = config.get_log_file_path()
    if log_file is not None and not config.is_ci_mode:
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    logging.getLogger("airelay.logging").debug(
        "Logging configured",
        extra={
            "metadata": {
                "log_level": config.log_level,
                "log_format": config.log_format,
                "ci_mode": config.is_ci_mode,
                "log_file": str(log_file) if log_file else None,
            }
        },
    )

    return root_logger


def get_logger(name: str, **context) -> logging.Logger:
    """
    Get a logger, wrapped in a ContextAdapter when context is given.

    ``get_logger(__name__, provider="groq")`` tags every record with the provider,
    which the formatters render as a field of its own.
    """
    logger = logging.getLogger(name)
    if context:
        return ContextAdapter(logger, context)
    return logger


def log_provider_call(
    logger: logging.Logger,
    provider: str,
    model: Optional[str],
    duration: float,
    success: bool,
    **metadata,
):
    """
    Log a single outbound provider call.

    Args:
        logger: Logger instance
        provider: Provider name
        model: Model name sent to the provider
        duration: Call duration in seconds
        success: Whether the call succeeded
        **metadata: Additional metadata (masked key, attempt number, error text)
    """
    status = "success" if success else "failed"
    logger.log(
        logging.DEBUG if success else logging.WARNING,
        f"Provider call: {provider}/{model} {status} in {duration:.2f}s",
        extra={
            "provider": provider,
            "model_name": model,
            "status": status,
            "metadata": {"duration": round(duration, 3), "success": success, **metadata},
        },
    )
