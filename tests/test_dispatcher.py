"""
Tests for key rotation, error classification and retry backoff.
"""

import asyncio

import aiohttp
import pytest

from airelay.core.exceptions import (
    MalformedResponseError,
    ProviderError,
    ProviderTransportError,
    ValidationError,
)
from airelay.providers.dispatcher import Dispatcher, RetryPolicy, classify_error
from airelay.providers.types import ErrorClass, ProviderName

KEYED_PROVIDERS = [
    ProviderName.GOOGLE,
    ProviderName.OPENAI,
    ProviderName.GROQ,
    ProviderName.CLAUDE,
    ProviderName.COHERE,
    ProviderName.HUGGINGFACE,
    ProviderName.TOGETHER,
]


def _malformed(provider="openai"):
    return MalformedResponseError(
        "Invalid response structure", provider=provider, status_code=200, field_path="choices[0]"
    )


@pytest.fixture
def make_dispatcher(recorded_sleeps, scripted_adapter):
    """Build a dispatcher whose only adapter replays the given script."""

    def _make(provider, script, policy=None):
        adapter = scripted_adapter(provider, script)
        dispatcher = Dispatcher(
            retry_policy=policy or RetryPolicy(),
            adapters={provider: adapter},
            sleep=recorded_sleeps,
        )
        return dispatcher, adapter

    return _make


class TestClassifyError:
    """Test cases for retry classification."""

    @pytest.mark.parametrize("status", [401, 403])
    def test_credential_statuses(self, status, error_factory):
        assert classify_error(error_factory(status)) == ErrorClass.INVALID_CREDENTIAL

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 599])
    def test_transient_statuses(self, status, error_factory):
        assert classify_error(error_factory(status)) == ErrorClass.TRANSIENT

    @pytest.mark.parametrize("status", [400, 404, 422])
    def test_other_statuses_are_fatal(self, status, error_factory):
        assert classify_error(error_factory(status)) == ErrorClass.FATAL

    def test_malformed_response_is_fatal(self):
        assert classify_error(_malformed()) == ErrorClass.FATAL

    @pytest.mark.parametrize(
        "error",
        [
            ProviderTransportError("timeout", provider="openai", reason="timeout"),
            asyncio.TimeoutError(),
            aiohttp.ClientConnectionError("reset"),
        ],
    )
    def test_transport_failures_are_transient(self, error):
        assert classify_error(error) == ErrorClass.TRANSIENT

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("API error (401): bad key", ErrorClass.INVALID_CREDENTIAL),
            ("Unauthorized", ErrorClass.INVALID_CREDENTIAL),
            ("upstream returned 503", ErrorClass.TRANSIENT),
            ("request timed out", ErrorClass.TRANSIENT),
            ("something else entirely", ErrorClass.FATAL),
        ],
    )
    def test_message_fallback(self, message, expected):
        assert classify_error(RuntimeError(message)) == expected


class TestRetryPolicy:
    """Test cases for the backoff schedule."""

    def test_defaults(self):
        policy = RetryPolicy()

        assert policy.max_retries_per_key == 1
        assert policy.attempts_per_key == 2
        assert policy.delay_for(0) == pytest.approx(0.3)
        assert policy.delay_for(1) == pytest.approx(0.6)
        assert policy.delay_for(2) == pytest.approx(1.2)

    def test_rejects_negative_values(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries_per_key=-1)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=-0.1)


class TestNormalizeKeys:
    """Test cases for key ring normalization."""

    def test_single_string(self):
        assert Dispatcher.normalize_keys(ProviderName.OPENAI, "sk-1") == ["sk-1"]

    def test_blank_entries_dropped(self):
        assert Dispatcher.normalize_keys(ProviderName.OPENAI, ["", "sk-2"]) == ["sk-2"]

    @pytest.mark.parametrize("provider", [ProviderName.LOCAL, ProviderName.OLLAMA])
    def test_keyless_provider_without_keys(self, provider):
        assert Dispatcher.normalize_keys(provider, None) is None
        assert Dispatcher.normalize_keys(provider, []) is None

    @pytest.mark.parametrize("provider", KEYED_PROVIDERS)
    def test_keyed_provider_without_keys(self, provider):
        with pytest.raises(ValidationError) as exc_info:
            Dispatcher.normalize_keys(provider, [])

        assert str(exc_info.value) == f"API key required for provider: {provider.value}"


class TestDispatch:
    """Test cases for the rotation and retry state machine."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider", KEYED_PROVIDERS)
    async def test_first_key_succeeds(self, provider, make_dispatcher, sample_request, recorded_sleeps):
        dispatcher, adapter = make_dispatcher(provider, {"k1": ["ok"], "k2": ["unused"]})

        outcome = await dispatcher.dispatch(provider, ["k1", "k2"], sample_request, session=object())

        assert outcome.success
        assert outcome.text == "ok"
        assert adapter.calls == ["k1"]
        assert recorded_sleeps.delays == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider", KEYED_PROVIDERS)
    async def test_fatal_error_aborts_remaining_keys(self, provider, make_dispatcher, sample_request, error_factory):
        dispatcher, adapter = make_dispatcher(
            provider, {"k1": [error_factory(400, provider=provider.value)], "k2": ["ok"]}
        )

        outcome = await dispatcher.dispatch(provider, ["k1", "k2"], sample_request, session=object())

        assert not outcome.success
        assert outcome.error.status_code == 400
        assert adapter.calls == ["k1"]
        assert outcome.attempts[0].error_class == ErrorClass.FATAL

    @pytest.mark.asyncio
    async def test_malformed_response_aborts(self, make_dispatcher, sample_request):
        dispatcher, adapter = make_dispatcher(
            ProviderName.COHERE, {"k1": [_malformed("cohere")], "k2": ["ok"]}
        )

        outcome = await dispatcher.dispatch(ProviderName.COHERE, ["k1", "k2"], sample_request, session=object())

        assert isinstance(outcome.error, MalformedResponseError)
        assert adapter.calls == ["k1"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider", KEYED_PROVIDERS)
    async def test_invalid_key_moves_on_without_sleeping(
        self, provider, make_dispatcher, sample_request, recorded_sleeps, error_factory
    ):
        dispatcher, adapter = make_dispatcher(
            provider, {"bad": [error_factory(401, provider=provider.value)], "good": ["recovered"]}
        )

        outcome = await dispatcher.dispatch(provider, ["bad", "good"], sample_request, session=object())

        assert outcome.success
        assert outcome.text == "recovered"
        assert adapter.calls == ["bad", "good"]
        assert recorded_sleeps.delays == []
        assert outcome.attempts[0].error_class == ErrorClass.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider", KEYED_PROVIDERS)
    async def test_transient_error_retries_same_key_then_rotates(
        self, provider, make_dispatcher, sample_request, recorded_sleeps, error_factory
    ):
        limited = error_factory(429, provider=provider.value)
        dispatcher, adapter = make_dispatcher(
            provider, {"k1": [limited, limited], "k2": ["second key"]}
        )

        outcome = await dispatcher.dispatch(provider, ["k1", "k2"], sample_request, session=object())

        assert outcome.success
        assert outcome.text == "second key"
        assert adapter.calls == ["k1", "k1", "k2"]
        assert recorded_sleeps.delays == [pytest.approx(0.3)]
        assert outcome.attempts[0].backoff == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_transient_then_success_on_same_key(
        self, make_dispatcher, sample_request, recorded_sleeps, error_factory
    ):
        dispatcher, adapter = make_dispatcher(
            ProviderName.OPENAI, {"k1": [error_factory(503), "after retry"]}
        )

        outcome = await dispatcher.dispatch(ProviderName.OPENAI, ["k1"], sample_request, session=object())

        assert outcome.text == "after retry"
        assert adapter.calls == ["k1", "k1"]
        assert recorded_sleeps.delays == [pytest.approx(0.3)]

    @pytest.mark.asyncio
    async def test_backoff_doubles_per_attempt(
        self, make_dispatcher, sample_request, recorded_sleeps, error_factory
    ):
        dispatcher, adapter = make_dispatcher(
            ProviderName.GROQ,
            {"k1": [error_factory(500)] * 4},
            policy=RetryPolicy(max_retries_per_key=3, base_delay=0.3),
        )

        outcome = await dispatcher.dispatch(ProviderName.GROQ, ["k1"], sample_request, session=object())

        assert not outcome.success
        assert len(adapter.calls) == 4
        assert recorded_sleeps.delays == [pytest.approx(0.3), pytest.approx(0.6), pytest.approx(1.2)]

    @pytest.mark.asyncio
    async def test_all_keys_fail_returns_last_error(
        self, make_dispatcher, sample_request, error_factory
    ):
        last = error_factory(403, body="second key revoked")
        dispatcher, adapter = make_dispatcher(
            ProviderName.OPENAI, {"k1": [error_factory(401)], "k2": [last]}
        )

        outcome = await dispatcher.dispatch(ProviderName.OPENAI, ["k1", "k2"], sample_request, session=object())

        assert not outcome.success
        assert outcome.error is last
        assert [a.key_index for a in outcome.attempts] == [0, 1]

    @pytest.mark.asyncio
    async def test_transport_failures_rotate_keys(
        self, make_dispatcher, sample_request, recorded_sleeps
    ):
        timeout = ProviderTransportError("timed out", provider="claude", reason="timeout")
        dispatcher, adapter = make_dispatcher(
            ProviderName.CLAUDE, {"k1": [timeout, timeout], "k2": ["ok"]}
        )

        outcome = await dispatcher.dispatch(ProviderName.CLAUDE, ["k1", "k2"], sample_request, session=object())

        assert outcome.text == "ok"
        assert recorded_sleeps.delays == [pytest.approx(0.3)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider", [ProviderName.LOCAL, ProviderName.OLLAMA])
    async def test_keyless_provider_single_call(
        self, provider, make_dispatcher, sample_request, recorded_sleeps, error_factory
    ):
        dispatcher, adapter = make_dispatcher(provider, {None: [error_factory(503, provider=provider.value)]})

        outcome = await dispatcher.dispatch(provider, None, sample_request, session=object())

        assert not outcome.success
        assert adapter.calls == [None]
        assert recorded_sleeps.delays == []
        assert outcome.attempts[0].key_index is None

    @pytest.mark.asyncio
    async def test_keyless_provider_with_key_uses_ring(self, make_dispatcher, sample_request):
        dispatcher, adapter = make_dispatcher(ProviderName.LOCAL, {"lm-studio": ["local text"]})

        outcome = await dispatcher.dispatch(ProviderName.LOCAL, ["lm-studio"], sample_request, session=object())

        assert outcome.text == "local text"
        assert adapter.calls == ["lm-studio"]

    @pytest.mark.asyncio
    async def test_empty_ring_for_keyed_provider(self, make_dispatcher, sample_request):
        dispatcher, adapter = make_dispatcher(ProviderName.OPENAI, {})

        with pytest.raises(ValidationError):
            await dispatcher.dispatch(ProviderName.OPENAI, [], sample_request, session=object())

        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_accepts_provider_string(self, make_dispatcher, sample_request):
        dispatcher, adapter = make_dispatcher(ProviderName.GROQ, {"k": ["fast"]})

        outcome = await dispatcher.dispatch("groq", ["k"], sample_request, session=object())

        assert outcome.text == "fast"


class TestDispatchOverHttp:
    """End-to-end dispatch through the real adapters with a mocked session."""

    @pytest.mark.asyncio
    async def test_openai_success(self, sample_request, session_factory, response_factory):
        session = session_factory(
            response_factory(200, {"choices": [{"message": {"content": "Hi there"}}]})
        )
        dispatcher = Dispatcher()

        outcome = await dispatcher.dispatch(ProviderName.OPENAI, ["sk-1"], sample_request, session=session)

        assert outcome.success
        assert outcome.text == "Hi there"
        headers = session.post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer sk-1"

    @pytest.mark.asyncio
    async def test_rotates_after_unauthorized(
        self, sample_request, session_factory, response_factory, recorded_sleeps
    ):
        session = session_factory(
            response_factory(401, raw='{"error": {"message": "Incorrect API key"}}'),
            response_factory(200, {"content": [{"text": "from second key"}]}),
        )
        dispatcher = Dispatcher(sleep=recorded_sleeps)

        outcome = await dispatcher.dispatch(
            ProviderName.CLAUDE, ["ant-bad", "ant-good"], sample_request, session=session
        )

        assert outcome.text == "from second key"
        sent_keys = [c.kwargs["headers"]["x-api-key"] for c in session.post.call_args_list]
        assert sent_keys == ["ant-bad", "ant-good"]
        assert recorded_sleeps.delays == []
