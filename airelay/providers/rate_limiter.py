"""
Per-provider minimum-interval gate.

Tracks when each provider was last called and reports whether a new call
would arrive too early. ``should_defer`` is advisory; ``wait_turn`` is the
blocking variant used by the gateway.
"""

import asyncio
import threading
import time
import logging
from typing import Callable, Dict, Optional, Any

from .types import ProviderName, min_interval_ms

logger = logging.getLogger(__name__)


class ProviderRateLimiter:
    """Minimum-interval metering keyed by provider."""

    def __init__(
        self,
        intervals_ms: Optional[Dict[ProviderName, int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            intervals_ms: Per-provider overrides of the minimum interval
            clock: Monotonic clock in seconds, injectable for tests
        """
        self._overrides: Dict[ProviderName, int] = dict(intervals_ms or {})
        self._clock = clock
        self._last_call: Dict[ProviderName, float] = {}
        self._lock = threading.Lock()

    def interval_for(self, provider: ProviderName) -> float:
        """Minimum interval for a provider, in seconds."""
        provider = ProviderName.parse(provider)
        millis = self._overrides.get(provider, min_interval_ms(provider))
        return millis / 1000.0

    def seconds_until_ready(self, provider: ProviderName) -> float:
        """How long a call to this provider would have to wait right now."""
        provider = ProviderName.parse(provider)
        with self._lock:
            last = self._last_call.get(provider)
            if last is None:
                return 0.0
            remaining = self.interval_for(provider) - (self._clock() - last)
        return max(0.0, remaining)

    def should_defer(self, provider: ProviderName) -> bool:
        """True when the previous call to this provider is more recent than its interval."""
        return self.seconds_until_ready(provider) > 0

    def record_call(self, provider: ProviderName) -> None:
        """Stamp the current time as this provider's last call."""
        provider = ProviderName.parse(provider)
        with self._lock:
            self._last_call[provider] = self._clock()

    async def wait_turn(
        self,
        provider: ProviderName,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> float:
        """
        Sleep until the provider's interval has elapsed, then record the call.

        Returns:
            Seconds spent waiting
        """
        provider = ProviderName.parse(provider)
        waited = 0.0
        delay = self.seconds_until_ready(provider)
        while delay > 0:
            logger.info(f"Rate limit for {provider.value} reached, waiting {delay:.2f}s")
            await sleep(delay)
            waited += delay
            delay = self.seconds_until_ready(provider)
        self.record_call(provider)
        return waited

    def reset(self, provider: Optional[ProviderName] = None) -> None:
        """Forget recorded calls for one provider, or for all of them."""
        with self._lock:
            if provider is None:
                self._last_call.clear()
            else:
                self._last_call.pop(ProviderName.parse(provider), None)

    def get_usage_stats(self) -> Dict[str, Any]:
        """Get last-call bookkeeping for all providers seen so far."""
        with self._lock:
            now = self._clock()
            snapshot = dict(self._last_call)
        return {
            provider.value: {
                "seconds_since_last_call": round(now - last, 3),
                "min_interval": self.interval_for(provider),
            }
            for provider, last in snapshot.items()
        }
