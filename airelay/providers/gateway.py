"""
Public entry point of the dispatch layer.

``generate_response`` composes the request queue, the per-provider rate
limiter and the dispatcher, and hands a plain string back to the caller.
"""

import re
import time
from typing import Any, Dict, Optional, Sequence, Union

import aiohttp

from ..core.config import Config
from ..core.logging_config import get_logger
from .adapters import ADAPTERS
from .dispatcher import Dispatcher, RetryPolicy
from .rate_limiter import ProviderRateLimiter
from .request_queue import RequestQueue
from .types import (
    CanonicalRequest,
    DispatchOutcome,
    KEYLESS_PROVIDERS,
    ProviderName,
    RequestOptions,
    build_request,
    min_interval_ms,
)


_ASSISTANT_LABEL = re.compile(r"^\*\*Assistant:\*\*\s*", re.IGNORECASE)


def clean_response(text: str, provider: ProviderName) -> str:
    """Trim a response and strip provider-specific artifacts."""
    cleaned = text.strip()
    if provider == ProviderName.GOOGLE:
        cleaned = _ASSISTANT_LABEL.sub("", cleaned)
    return cleaned


class AIGateway:
    """
    Serialized, rate-limited access to the configured AI providers.

    One gateway owns one queue and one rate limiter; every call made through
    it is executed one at a time in submission order.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        dispatcher: Optional[Dispatcher] = None,
        rate_limiter: Optional[ProviderRateLimiter] = None,
        queue: Optional[RequestQueue] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize the gateway; collaborators default to fresh instances built from config."""
        self.config = config or Config()
        self.dispatcher = dispatcher or Dispatcher(
            RetryPolicy(
                max_retries_per_key=self.config.max_retries_per_key,
                base_delay=self.config.retry_base_delay,
            )
        )
        self.rate_limiter = rate_limiter or ProviderRateLimiter()
        self.queue = queue or RequestQueue(inter_task_delay=self.config.queue_delay)
        self.session = session

    async def generate_response(
        self,
        prompt: str,
        provider: Union[str, ProviderName, None] = None,
        api_key: Optional[str] = None,
        api_keys: Optional[Sequence[str]] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        image: Any = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Generate a response from the selected provider.

        Unset options fall back to the gateway's configuration.

        Args:
            prompt: User prompt
            provider: Provider tag (``openai``, ``google``, ...)
            api_key: Single API key
            api_keys: Key ring tried in order; takes precedence over ``api_key``
            model: Model override
            temperature: Sampling temperature in [0, 2]
            max_tokens: Completion token budget
            image: Data URI, bare base64 string, mapping, or ImageAttachment
            base_url: Endpoint override
            timeout: Per-call timeout in seconds

        Returns:
            Cleaned response text

        Raises:
            ValidationError: If the request or credentials are invalid
            ProviderError: If the provider rejected the request
            ProviderTransportError: If the provider could not be reached
        """
        provider_name = ProviderName.parse(provider or self.config.provider)
        keys = self._resolve_keys(provider_name, api_key, api_keys)
        request = build_request(
            prompt,
            image=image,
            model=model if model is not None else self._config_model(provider_name),
            temperature=temperature if temperature is not None else self.config.temperature,
            max_tokens=max_tokens if max_tokens is not None else self.config.max_tokens,
        )
        options = RequestOptions(
            base_url=base_url if base_url is not None else self._config_base_url(provider_name),
            timeout=timeout if timeout is not None else self.config.request_timeout,
        )
        keys = self.dispatcher.normalize_keys(provider_name, keys)

        outcome = await self.queue.enqueue(
            lambda: self._dispatch(provider_name, keys, request, options)
        )
        return clean_response(outcome.unwrap(), provider_name)

    async def dispatch(
        self,
        provider: Union[str, ProviderName],
        keys: Optional[Sequence[str]],
        request: CanonicalRequest,
        options: Optional[RequestOptions] = None,
    ) -> DispatchOutcome:
        """Queue a prepared request and return the raw outcome instead of raising."""
        provider_name = ProviderName.parse(provider)
        return await self.queue.enqueue(
            lambda: self._dispatch(provider_name, keys, request, options or RequestOptions())
        )

    async def _dispatch(
        self,
        provider: ProviderName,
        keys: Optional[Sequence[str]],
        request: CanonicalRequest,
        options: RequestOptions,
    ) -> DispatchOutcome:
        request_logger = get_logger(__name__, provider=provider.value)
        if self.config.enforce_rate_limit:
            waited = await self.rate_limiter.wait_turn(provider)
            if waited:
                request_logger.debug(f"Deferred {provider.value} call by {waited:.2f}s")
        else:
            if self.rate_limiter.should_defer(provider):
                request_logger.debug(f"{provider.value} called inside its minimum interval")
            self.rate_limiter.record_call(provider)

        start = time.monotonic()
        outcome = await self.dispatcher.dispatch(
            provider, keys, request, options, session=self.session
        )
        duration = time.monotonic() - start

        if outcome.success:
            request_logger.info(
                f"Response received from {provider.value} in {duration:.2f}s",
                extra={"metadata": {"attempts": len(outcome.attempts), "duration": duration}},
            )
        else:
            request_logger.error(
                f"Request to {provider.value} failed after {len(outcome.attempts)} attempt(s): "
                f"{outcome.error}",
                extra={"metadata": {"attempts": len(outcome.attempts), "duration": duration}},
            )
        return outcome

    def _resolve_keys(
        self,
        provider: ProviderName,
        api_key: Optional[str],
        api_keys: Optional[Sequence[str]],
    ) -> Optional[Sequence[str]]:
        if isinstance(api_keys, str):
            api_keys = [api_keys]
        if api_keys:
            return list(api_keys)
        if api_key:
            return [api_key]
        if provider.value == self.config.provider and self.config.key_ring:
            return self.config.key_ring
        return None

    def _config_model(self, provider: ProviderName) -> Optional[str]:
        if provider.value == self.config.provider:
            return self.config.model
        return None

    def _config_base_url(self, provider: ProviderName) -> Optional[str]:
        if provider.value == self.config.provider:
            return self.config.base_url
        return None

    @staticmethod
    def describe_providers() -> Dict[str, Dict[str, Any]]:
        """Static facts about every supported provider."""
        return {
            provider.value: {
                "default_model": adapter.default_model,
                "endpoint": adapter.endpoint,
                "min_interval_ms": min_interval_ms(provider),
                "requires_key": provider not in KEYLESS_PROVIDERS,
                "accepts_image": provider == ProviderName.GOOGLE,
            }
            for provider, adapter in ADAPTERS.items()
        }


async def generate_response(prompt: str, gateway: Optional[AIGateway] = None, **options: Any) -> str:
    """
    Convenience wrapper around ``AIGateway.generate_response``.

    Without an explicit gateway a new one is built from environment
    configuration, so queueing and rate limiting only span this call.
    """
    if gateway is None:
        gateway = AIGateway(Config.from_env())
    return await gateway.generate_response(prompt, **options)
