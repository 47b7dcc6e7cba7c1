"""Tests for agents/utils.py -- LLM client utilities and helpers.

Covers:
- extract_json_from_response: balanced-brace JSON extraction
- count_tokens_estimate and clamp_unit
- LLMClient: retries, fallback model, non-retryable errors, events, metrics
- MockLLMClient: scripted responses
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import structlog
from litellm.exceptions import AuthenticationError, RateLimitError

from agents.utils import (
    LLMClient,
    MockLLMClient,
    clamp_unit,
    count_tokens_estimate,
    extract_json_from_response,
)
from events.bus import EventBus
from events.types import EventType
from metrics import MetricsCollector
from rate_limiter import RateLimiter
from tests.conftest import collect_events, make_llm_response

# =========================================================================
# extract_json_from_response -- balanced-brace parser
# =========================================================================


class TestExtractJsonFromResponse:
    """JSON extraction from free-form LLM responses."""

    def test_pure_json(self) -> None:
        result = extract_json_from_response('{"key": "value"}')
        assert result is not None
        assert result["key"] == "value"

    def test_json_in_code_fence(self) -> None:
        response = """Here's the plan:
```json
{"reasoning": "split by region", "subtasks": [{"title": "a"}, {"title": "b"}]}
```
Done!"""
        result = extract_json_from_response(response)
        assert result is not None
        assert len(result["subtasks"]) == 2

    def test_json_in_bare_code_fence(self) -> None:
        response = """```
{"conclusion": "yes"}
```"""
        result = extract_json_from_response(response)
        assert result is not None
        assert result["conclusion"] == "yes"

    def test_json_with_surrounding_text(self) -> None:
        response = 'The answer is: {"confidence": 0.7, "evidence": ["x"]} as requested'
        result = extract_json_from_response(response)
        assert result is not None
        assert result["confidence"] == 0.7

    def test_deeply_nested_balanced_braces(self) -> None:
        response = 'Sure! {"a": {"b": {"c": {"d": "found"}}}}'
        result = extract_json_from_response(response)
        assert result is not None
        assert result["a"]["b"]["c"]["d"] == "found"

    def test_no_json(self) -> None:
        assert extract_json_from_response("No JSON here at all.") is None

    def test_empty_string(self) -> None:
        assert extract_json_from_response("") is None

    def test_malformed_json(self) -> None:
        assert extract_json_from_response("{bad json: without quotes}") is None

    def test_first_valid_json_returned(self) -> None:
        result = extract_json_from_response('Ignore {invalid and {"valid": true}')
        assert result is not None
        assert result["valid"] is True

    def test_object_found_inside_top_level_array(self) -> None:
        assert extract_json_from_response('[{"title": "a"}]') == {"title": "a"}

    def test_json_with_string_containing_braces(self) -> None:
        result = extract_json_from_response('{"excerpt": "set {x} to {}"}')
        assert result is not None
        assert result["excerpt"] == "set {x} to {}"


# =========================================================================
# Small helpers
# =========================================================================


class TestHelpers:
    def test_count_tokens_estimate(self) -> None:
        assert count_tokens_estimate("") == 0
        assert count_tokens_estimate("a" * 400) == 100

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (0.3, 0.3),
            (1.7, 1.0),
            (-2, 0.0),
            ("0.25", 0.25),
            ("high", 0.5),
            (None, 0.5),
            (float("nan"), 0.5),
        ],
    )
    def test_clamp_unit(self, value: object, expected: float) -> None:
        assert clamp_unit(value) == pytest.approx(expected)

    def test_clamp_unit_custom_default(self) -> None:
        assert clamp_unit(None, default=0.0) == 0.0


# =========================================================================
# LLMClient
# =========================================================================


def _model_response(content: str = "ok") -> SimpleNamespace:
    return SimpleNamespace(
        choices=[
            SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")
        ],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=8),
    )


def _client(**kwargs: object) -> LLMClient:
    client = LLMClient(
        default_model="openai/primary",
        retry_attempts=kwargs.pop("retry_attempts", 2),
        retry_delay=0.0,
        rate_limiter=RateLimiter(max_calls_per_minute=100, max_tokens_per_minute=1_000_000),
        **kwargs,
    )
    client._async_sleep = AsyncMock()  # type: ignore[method-assign]
    return client


def _rate_limit_error() -> RateLimitError:
    return RateLimitError("slow down", llm_provider="openai", model="primary")


class TestLLMClient:
    """Retry, fallback and observability behaviour around LiteLLM."""

    async def test_successful_call(self) -> None:
        client = _client()
        client._make_request = AsyncMock(return_value=_model_response("hello"))  # type: ignore[method-assign]

        response = await client.call([{"role": "user", "content": "hi"}])

        assert response.content == "hello"
        assert response.metrics.input_tokens == 12
        assert response.metrics.total_tokens == 20
        assert client._make_request.await_args.args[1] == "openai/primary"

    async def test_transient_error_is_retried(self) -> None:
        client = _client()
        client._make_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=[_rate_limit_error(), _model_response("second try")]
        )

        response = await client.call([{"role": "user", "content": "hi"}])

        assert response.content == "second try"
        assert client._make_request.await_count == 2
        client._async_sleep.assert_awaited_once()

    async def test_fallback_model_after_retries(self) -> None:
        client = _client(retry_attempts=1, fallback_model="openai/backup")
        client._make_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=[_rate_limit_error(), _rate_limit_error(), _model_response("backup")]
        )

        response = await client.call([{"role": "user", "content": "hi"}])

        assert response.content == "backup"
        assert client._make_request.await_args.args[1] == "openai/backup"

    async def test_last_error_raised_without_fallback(self) -> None:
        client = _client(retry_attempts=1)
        client.fallback_model = None
        client._make_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=[_rate_limit_error(), _rate_limit_error()]
        )

        with pytest.raises(RateLimitError):
            await client.call([{"role": "user", "content": "hi"}])
        assert client._make_request.await_count == 2

    async def test_authentication_error_not_retried(self) -> None:
        client = _client()
        client._make_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=AuthenticationError("bad key", llm_provider="openai", model="primary")
        )

        with pytest.raises(AuthenticationError):
            await client.call([{"role": "user", "content": "hi"}])
        assert client._make_request.await_count == 1

    async def test_events_and_metrics_use_bound_run_id(self, event_bus: EventBus) -> None:
        metrics = MetricsCollector()
        metrics.start("run_ctx")
        client = _client(event_bus=event_bus, metrics_collector=metrics)
        client._make_request = AsyncMock(return_value=_model_response())  # type: ignore[method-assign]

        with structlog.contextvars.bound_contextvars(run_id="run_ctx"):
            await client.call([{"role": "user", "content": "hi"}], source="researcher")

        events = collect_events(event_bus, "run_ctx")
        assert [event.type for event in events] == [EventType.LLM_CALL_COMPLETE]
        assert events[0].source == "researcher"
        assert metrics.get("run_ctx").llm_calls == 1
        assert metrics.get("run_ctx").total_tokens == 20

    async def test_retry_emits_error_event(self, event_bus: EventBus) -> None:
        client = _client(event_bus=event_bus)
        client._make_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=[_rate_limit_error(), _model_response()]
        )

        await client.call([{"role": "user", "content": "hi"}], run_id="run_retry")

        types = [event.type for event in collect_events(event_bus, "run_retry")]
        assert types == [EventType.AGENT_ERROR, EventType.LLM_CALL_COMPLETE]


# =========================================================================
# MockLLMClient
# =========================================================================


class TestMockLLMClient:
    async def test_returns_responses_in_order(self) -> None:
        client = MockLLMClient(responses=[make_llm_response("one"), make_llm_response("two")])

        first = await client.call([{"role": "user", "content": "a"}], source="decomposer")
        second = await client.call([{"role": "user", "content": "b"}])

        assert (first.content, second.content) == ("one", "two")
        assert client.call_history[0]["source"] == "decomposer"

    async def test_raises_scripted_exception(self) -> None:
        client = MockLLMClient(responses=[RuntimeError("provider down")])

        with pytest.raises(RuntimeError, match="provider down"):
            await client.call([{"role": "user", "content": "a"}])

    async def test_exhausted_script_raises_index_error(self) -> None:
        client = MockLLMClient(responses=[])

        with pytest.raises(IndexError):
            await client.call([{"role": "user", "content": "a"}])

    async def test_reset(self) -> None:
        client = MockLLMClient(responses=[make_llm_response("one")])
        await client.call([{"role": "user", "content": "a"}])

        client.reset()

        assert client.call_history == []
        assert (await client.call([{"role": "user", "content": "a"}])).content == "one"
