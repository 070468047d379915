"""
Pytest configuration and shared fixtures for AI Relay tests.

Provides fake aiohttp sessions, scripted adapters, a controllable clock
and a recording sleep so retry and rate-limit tests run instantly.
"""

import json
import logging
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from airelay.core.config import Config
from airelay.core.exceptions import ProviderError
from airelay.providers.adapters import ProviderAdapter
from airelay.providers.types import CanonicalRequest, ProviderName


def make_response(status: int = 200, payload: Any = None, raw: Optional[str] = None) -> AsyncMock:
    """Build a mock aiohttp response whose text() returns the given body."""
    response = AsyncMock()
    response.status = status
    response.text.return_value = raw if raw is not None else json.dumps(payload)
    return response


def make_session(*responses: Any) -> MagicMock:
    """
    Build a mock aiohttp session whose post() yields the given responses in order.

    An exception in the list is raised when the call is made.
    """
    session = MagicMock()
    session.post.return_value.__aenter__.side_effect = list(responses)
    return session


def http_error(status: int, body: str = "error", provider: str = "openai") -> ProviderError:
    return ProviderError(
        f"API error ({status}): {body}",
        provider=provider,
        status_code=status,
        body=body,
    )


class ScriptedAdapter(ProviderAdapter):
    """Adapter double that replays a per-key script of results and exceptions."""

    def __init__(self, provider: ProviderName, script: Dict[Optional[str], List[Any]]):
        self.provider = provider
        self.label = provider.value
        self.default_model = "scripted-model"
        self.script = {key: list(outcomes) for key, outcomes in script.items()}
        self.calls: List[Optional[str]] = []

    async def send(self, session, request, key, options=None):
        self.calls.append(key)
        outcome = self.script[key].pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeClock:
    """Manually advanced monotonic clock, in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def recorded_sleeps():
    """A no-op async sleep that records each requested delay."""
    delays: List[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    fake_sleep.delays = delays
    return fake_sleep


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def sample_request():
    return CanonicalRequest(prompt="Hello", temperature=0.7, max_tokens=2048)


@pytest.fixture
def temp_config():
    """Create a configuration for gateway tests with no pacing delays."""
    return Config(
        provider="openai",
        api_keys=["sk-config-key"],
        log_level="DEBUG",
        queue_delay=0.0,
        retry_base_delay=0.3,
    )


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Keep setup_logging calls from leaking handlers between tests."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def response_factory():
    return make_response


@pytest.fixture
def session_factory():
    return make_session


@pytest.fixture
def error_factory():
    return http_error


@pytest.fixture
def scripted_adapter():
    return ScriptedAdapter
