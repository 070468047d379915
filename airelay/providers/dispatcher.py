"""
Key rotation and retry logic for provider calls.

The dispatcher walks a key ring in order, classifies every failure and
decides whether to retry the same key, move on to the next one, or give up.
"""

import asyncio
import re
import time
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

from ..core.config import mask_key
from ..core.exceptions import (
    MalformedResponseError,
    ProviderError,
    ProviderTransportError,
    ValidationError,
)
from ..core.logging_config import log_provider_call
from .adapters import ADAPTERS, ProviderAdapter
from .types import (
    AttemptRecord,
    CanonicalRequest,
    DispatchOutcome,
    ErrorClass,
    KEYLESS_PROVIDERS,
    ProviderName,
    RequestOptions,
)

logger = logging.getLogger(__name__)

_CREDENTIAL_PATTERN = re.compile(r"\b(401|403)\b|unauthori[sz]ed|forbidden", re.IGNORECASE)
_TRANSIENT_PATTERN = re.compile(r"\b(429|5\d\d)\b|timeout|timed out|network|rate limit", re.IGNORECASE)


def classify_error(error: BaseException) -> ErrorClass:
    """Classify a failed attempt for retry decisions."""
    if isinstance(error, MalformedResponseError):
        return ErrorClass.FATAL

    if isinstance(error, ProviderError) and error.status_code is not None:
        status = error.status_code
        if status in (401, 403):
            return ErrorClass.INVALID_CREDENTIAL
        if status == 429 or 500 <= status <= 599:
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL

    if isinstance(error, (ProviderTransportError, asyncio.TimeoutError, aiohttp.ClientError)):
        return ErrorClass.TRANSIENT

    # Errors from custom adapters only carry their status in the message text
    message = str(error)
    if _CREDENTIAL_PATTERN.search(message):
        return ErrorClass.INVALID_CREDENTIAL
    if _TRANSIENT_PATTERN.search(message):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


@dataclass
class RetryPolicy:
    """Configuration for per-key retry logic."""

    max_retries_per_key: int = 1
    base_delay: float = 0.3

    def __post_init__(self):
        """Validate configuration."""
        if self.max_retries_per_key < 0:
            raise ValueError("max_retries_per_key must be non-negative")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")

    @property
    def attempts_per_key(self) -> int:
        return self.max_retries_per_key + 1

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after the given zero-based attempt."""
        return self.base_delay * (2 ** attempt)


SleepFunc = Callable[[float], Awaitable[None]]


class Dispatcher:
    """
    Sends one canonical request to a provider, rotating through API keys.

    Keys are tried strictly in order. An invalid credential moves on to the
    next key at once, a transient failure is retried on the same key with
    exponential backoff, and a fatal failure ends the dispatch without
    touching the remaining keys.
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        adapters: Optional[Dict[ProviderName, ProviderAdapter]] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.adapters = dict(adapters) if adapters is not None else dict(ADAPTERS)
        self._sleep = sleep or asyncio.sleep

    def get_adapter(self, provider: ProviderName) -> ProviderAdapter:
        try:
            return self.adapters[provider]
        except KeyError:
            raise ValidationError(
                f"No adapter registered for provider: {provider.value}",
                validation_type="provider",
            )

    @staticmethod
    def normalize_keys(
        provider: ProviderName, keys: Optional[Sequence[str]]
    ) -> Optional[List[str]]:
        """
        Turn the caller's keys into a key ring.

        Returns None when the provider runs without credentials and none were
        given. Raises ValidationError when a credentialed provider has no key.
        """
        if isinstance(keys, str):
            keys = [keys]
        ring = [k for k in (keys or []) if k]
        if ring:
            return ring
        if provider in KEYLESS_PROVIDERS:
            return None
        raise ValidationError(
            f"API key required for provider: {provider.value}",
            validation_type="credentials",
            violations=["empty key ring"],
        )

    async def dispatch(
        self,
        provider: ProviderName,
        keys: Optional[Sequence[str]],
        request: CanonicalRequest,
        options: Optional[RequestOptions] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> DispatchOutcome:
        """
        Dispatch a request and report the outcome.

        Args:
            provider: Target provider
            keys: Key ring in fallback order, or None for keyless providers
            request: Canonical request
            options: Per-request base URL and timeout
            session: Optional shared aiohttp session; a short-lived one is opened otherwise

        Returns:
            DispatchOutcome with the first successful text or the last error

        Raises:
            ValidationError: If a credentialed provider is given no key
        """
        provider = ProviderName.parse(provider)
        adapter = self.get_adapter(provider)
        ring = self.normalize_keys(provider, keys)
        options = options or RequestOptions()

        if session is not None:
            return await self._dispatch_with_session(session, provider, adapter, ring, request, options)

        async with aiohttp.ClientSession() as owned_session:
            return await self._dispatch_with_session(
                owned_session, provider, adapter, ring, request, options
            )

    async def _dispatch_with_session(
        self,
        session: aiohttp.ClientSession,
        provider: ProviderName,
        adapter: ProviderAdapter,
        ring: Optional[List[str]],
        request: CanonicalRequest,
        options: RequestOptions,
    ) -> DispatchOutcome:
        attempts: List[AttemptRecord] = []

        if ring is None:
            # Keyless providers get exactly one call
            try:
                text = await self._call(session, adapter, request, None, options, None, 0)
            except Exception as e:
                attempts.append(
                    AttemptRecord(key_index=None, attempt=0, error_class=classify_error(e), error=str(e))
                )
                return DispatchOutcome.failed(provider, e, attempts)
            attempts.append(AttemptRecord(key_index=None, attempt=0))
            return DispatchOutcome.succeeded(provider, text, attempts)

        last_error: Optional[Exception] = None

        for key_index, key in enumerate(ring):
            for attempt in range(self.retry_policy.attempts_per_key):
                try:
                    text = await self._call(session, adapter, request, key, options, key_index, attempt)
                except Exception as e:
                    last_error = e
                    error_class = classify_error(e)
                    record = AttemptRecord(
                        key_index=key_index, attempt=attempt, error_class=error_class, error=str(e)
                    )
                    attempts.append(record)

                    if error_class == ErrorClass.FATAL:
                        logger.error(
                            f"{provider.value} request failed with unrecoverable error on key "
                            f"{mask_key(key)}, aborting: {str(e)[:200]}"
                        )
                        return DispatchOutcome.failed(provider, e, attempts)

                    if error_class == ErrorClass.INVALID_CREDENTIAL:
                        logger.warning(
                            f"{provider.value} rejected key {mask_key(key)} "
                            f"({key_index + 1}/{len(ring)}), trying next key"
                        )
                        break

                    if attempt < self.retry_policy.max_retries_per_key:
                        delay = self.retry_policy.delay_for(attempt)
                        record.backoff = delay
                        logger.warning(
                            f"Attempt {attempt + 1} on key {mask_key(key)} failed with transient error, "
                            f"retrying in {delay:.2f}s: {str(e)[:100]}"
                        )
                        await self._sleep(delay)
                        continue

                    logger.warning(
                        f"Retries exhausted for key {mask_key(key)} "
                        f"({key_index + 1}/{len(ring)}), trying next key"
                    )
                else:
                    attempts.append(AttemptRecord(key_index=key_index, attempt=attempt))
                    return DispatchOutcome.succeeded(provider, text, attempts)

        logger.error(f"All {len(ring)} API keys failed for {provider.value}")
        return DispatchOutcome.failed(provider, last_error, attempts)

    async def _call(
        self,
        session: aiohttp.ClientSession,
        adapter: ProviderAdapter,
        request: CanonicalRequest,
        key: Optional[str],
        options: RequestOptions,
        key_index: Optional[int],
        attempt: int,
    ) -> str:
        model = adapter.resolve_model(request)
        start = time.monotonic()
        try:
            text = await adapter.send(session, request, key, options)
        except Exception as e:
            log_provider_call(
                logger,
                adapter.provider.value,
                model,
                time.monotonic() - start,
                False,
                key=mask_key(key),
                key_index=key_index,
                attempt=attempt,
                error=str(e)[:200],
            )
            raise
        log_provider_call(
            logger,
            adapter.provider.value,
            model,
            time.monotonic() - start,
            True,
            key=mask_key(key),
            key_index=key_index,
            attempt=attempt,
        )
        return text
