"""
Provider dispatch and resilience layer for AI Relay.

This package provides:
- Adapters for nine generative-AI wire protocols
- Key-ring rotation with classified retries and exponential backoff
- Per-provider minimum-interval rate limiting
- A single-worker FIFO request queue
- The ``generate_response`` entry point tying them together
"""

from .types import (
    ProviderName,
    ErrorClass,
    ImageAttachment,
    CanonicalRequest,
    RequestOptions,
    DispatchOutcome,
    AttemptRecord,
    build_request,
)
from .adapters import ProviderAdapter, ADAPTERS, get_adapter
from .dispatcher import Dispatcher, RetryPolicy, classify_error
from .rate_limiter import ProviderRateLimiter
from .request_queue import RequestQueue
from .gateway import AIGateway, generate_response

__all__ = [
    # Core types
    "ProviderName",
    "ErrorClass",
    "ImageAttachment",
    "CanonicalRequest",
    "RequestOptions",
    "DispatchOutcome",
    "AttemptRecord",
    "build_request",
    # Main components
    "ProviderAdapter",
    "ADAPTERS",
    "get_adapter",
    "Dispatcher",
    "RetryPolicy",
    "classify_error",
    "ProviderRateLimiter",
    "RequestQueue",
    "AIGateway",
    "generate_response",
]
