"""LLM client utilities shared by the research collaborators.

This module provides:
- LLMClient: Wrapper around LiteLLM with retry logic, rate limiting, fallback
  model support, and metrics tracking
- MockLLMClient: Scripted client for tests
- extract_json_from_response: Tolerant JSON extraction from model replies
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from events.bus import EventBus
from events.types import EventType, LLMMetrics, ResearchEvent
from rate_limiter import RateLimiter, RateLimitExceededError, get_rate_limiter

if TYPE_CHECKING:
    from metrics import MetricsCollector

logger = structlog.get_logger(__name__)

# Errors worth another attempt against the same model.
TRANSIENT_ERRORS = (RateLimitError, ServiceUnavailableError, Timeout)

MAX_BACKOFF_SECONDS = 4.0


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        finish_reason: Why the model stopped (stop, length, etc.)
        metrics: Token usage and latency metrics
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Wrapper around LiteLLM with retry logic, rate limiting, fallback, and metrics.

    The LLMClient provides:
    - Multi-provider support via LiteLLM
    - Automatic retry on transient failures with capped exponential backoff
    - Rate limiting (RPM and TPM) via the shared RateLimiter
    - One attempt on a fallback model when the primary exhausts its retries
    - Event emission for observability (LLM_CALL_COMPLETE, AGENT_ERROR)

    Attributes:
        event_bus: Optional EventBus for emitting LLM call metrics
        default_model: Model used when a call does not name one
        fallback_model: Optional model tried once after the primary fails
        retry_attempts: Retries for transient errors
        retry_delay: Base delay between retries in seconds
        rate_limiter: RateLimiter instance for throttling API calls
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
        rate_limiter: RateLimiter | None = None,
        metrics_collector: Optional["MetricsCollector"] = None,
    ) -> None:
        self.event_bus = event_bus
        self.default_model = default_model or settings.default_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.llm_max_retries
        )
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.llm_retry_delay_seconds
        )
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.metrics_collector = metrics_collector

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int | None = None,
        run_id: str | None = None,
        source: str | None = None,
    ) -> LLMResponse:
        """Make an LLM call with rate limiting, retries, fallback, and metrics.

        Retries on: RateLimitError (429), ServiceUnavailableError (5xx),
        Timeout. Does NOT retry on: AuthenticationError, BadRequestError.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature (0.0-2.0)
            max_tokens: Maximum tokens in response
            run_id: Research run the call belongs to, for events and metrics.
                Defaults to the run_id bound in the structlog context.
            source: Collaborator making the call (e.g. "decomposer")

        Returns:
            LLMResponse with content and metrics

        Raises:
            RateLimitExceededError: If no rate limit slot frees up in time
            AuthenticationError: If the API key is invalid
            BadRequestError: If the request is malformed
            Exception: The last transient error after retries and fallback
        """
        model = model or self.default_model
        if run_id is None:
            run_id = structlog.contextvars.get_contextvars().get("run_id")

        # Rough estimate for rate limiting: 4 chars per token
        estimated_tokens = max(count_tokens_estimate(_joined_content(messages)), 500)

        try:
            reservation = await self.rate_limiter.acquire(estimated_tokens=estimated_tokens)
        except RateLimitExceededError as e:
            logger.error("llm_call_rate_limit_exceeded", model=model, error=str(e))
            await self._emit_error_event(run_id, source, e, model, 0, False)
            raise

        last_exception: Exception | None = None
        retry_count = 0

        for attempt in range(self.retry_attempts + 1):
            try:
                return await self._attempt(
                    messages, model, temperature, max_tokens, reservation, run_id, source
                )
            except TRANSIENT_ERRORS as e:
                last_exception = e
                retry_count = attempt + 1
                if attempt >= self.retry_attempts:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=self.retry_attempts + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    break
                delay = min(self.retry_delay * (2**attempt), MAX_BACKOFF_SECONDS)
                logger.warning(
                    "llm_call_retry",
                    model=model,
                    attempt=attempt + 1,
                    max_retries=self.retry_attempts,
                    error_type=type(e).__name__,
                    error=str(e),
                    retry_delay=delay,
                )
                await self._emit_error_event(run_id, source, e, model, retry_count, False)
                await self._async_sleep(delay)
            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self._emit_error_event(run_id, source, e, model, 0, False)
                raise

        use_fallback = bool(self.fallback_model and self.fallback_model != model)
        if use_fallback:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=self.fallback_model,
                primary_retries=retry_count,
                primary_error=str(last_exception),
            )
            try:
                reservation = await self.rate_limiter.acquire(estimated_tokens=estimated_tokens)
                return await self._attempt(
                    messages,
                    str(self.fallback_model),
                    temperature,
                    max_tokens,
                    reservation,
                    run_id,
                    source,
                )
            except Exception as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error_type=type(fallback_error).__name__,
                    error=str(fallback_error),
                )
                last_exception = last_exception or fallback_error

        if last_exception is None:
            raise RuntimeError("LLM call failed after all retries")
        await self._emit_error_event(
            run_id, source, last_exception, model, retry_count, use_fallback
        )
        raise last_exception

    async def _attempt(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
        reservation: int,
        run_id: str | None,
        source: str | None,
    ) -> LLMResponse:
        start_time = time.time()
        response = await self._make_request(messages, model, temperature, max_tokens)
        latency_ms = int((time.time() - start_time) * 1000)
        llm_response = self._parse_response(response, model, latency_ms)
        metrics = llm_response.metrics

        self.rate_limiter.record_usage(reservation, metrics.total_tokens)

        if self.metrics_collector and run_id:
            self.metrics_collector.record_llm_call(
                run_id,
                prompt_tokens=metrics.input_tokens,
                completion_tokens=metrics.output_tokens,
            )

        if self.event_bus and run_id:
            await self.event_bus.publish(
                ResearchEvent(
                    type=EventType.LLM_CALL_COMPLETE,
                    run_id=run_id,
                    source=source,
                    data={
                        "model": metrics.model,
                        "input_tokens": metrics.input_tokens,
                        "output_tokens": metrics.output_tokens,
                        "latency_ms": metrics.latency_ms,
                    },
                )
            )

        logger.info(
            "llm_call_complete",
            model=model,
            source=source,
            input_tokens=metrics.input_tokens,
            output_tokens=metrics.output_tokens,
            latency_ms=latency_ms,
        )
        return llm_response

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        """Make the actual LiteLLM request."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if settings.llm_api_base:
            kwargs["api_base"] = settings.llm_api_base

        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        """Parse the LiteLLM response into an LLMResponse."""
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        metrics = LLMMetrics(
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
        )
        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason or "unknown",
            metrics=metrics,
            raw_response=response,
        )

    async def _emit_error_event(
        self,
        run_id: str | None,
        source: str | None,
        error: Exception,
        model: str,
        retry_count: int,
        used_fallback: bool,
    ) -> None:
        """Emit an AGENT_ERROR event when an LLM call fails or retries."""
        if not (self.event_bus and run_id):
            return
        await self.event_bus.publish(
            ResearchEvent(
                type=EventType.AGENT_ERROR,
                run_id=run_id,
                source=source,
                data={
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "model": model,
                    "retry_count": retry_count,
                    "used_fallback": used_fallback,
                    "fallback_model": self.fallback_model,
                    "phase": "llm_call",
                },
            )
        )

    async def _async_sleep(self, seconds: float) -> None:
        """Sleep between retries. Separate method so tests can skip the wait."""
        await asyncio.sleep(seconds)


def _joined_content(messages: list[dict[str, Any]]) -> str:
    return "".join(str(message.get("content", "")) for message in messages)


_DECODER = json.JSONDecoder()
_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def _first_json_object(text: str) -> dict[str, Any] | None:
    """Decode the first ``{...}`` in ``text`` that parses as a JSON object."""
    start = text.find("{")
    while start != -1:
        try:
            parsed, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
        start = text.find("{", start + 1)
    return None


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract a JSON object from an LLM reply that may contain extra text.

    Fenced code blocks are searched first, then the reply as a whole. Models
    often wrap the object in prose, so decoding starts at every ``{`` until
    one yields an object.

    Args:
        response: The full LLM response text

    Returns:
        Parsed JSON dict if found, None otherwise
    """
    for match in _FENCE_PATTERN.finditer(response):
        parsed = _first_json_object(match.group(1))
        if parsed is not None:
            return parsed
    return _first_json_object(response)


def count_tokens_estimate(text: str) -> int:
    """Rough token count using the ~4 characters per token rule of thumb."""
    return len(text) // 4


def clamp_unit(value: Any, default: float = 0.5) -> float:
    """Coerce ``value`` to a float in [0, 1], using ``default`` when it is not numeric."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return min(max(number, 0.0), 1.0)


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Returns predefined responses in order and records every call.

    Usage:
        >>> client = MockLLMClient(responses=[make_llm_response('{"subtasks": []}')])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse | Exception] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize with predefined responses.

        Args:
            responses: Responses to return in order. Exceptions are raised
                instead of returned.
            **kwargs: Additional args passed to parent
        """
        kwargs.setdefault("rate_limiter", RateLimiter())
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int | None = None,
        run_id: str | None = None,
        source: str | None = None,
    ) -> LLMResponse:
        """Return the next predefined response.

        Raises:
            IndexError: If no more responses are available
        """
        self.call_history.append(
            {
                "messages": messages,
                "model": model or self.default_model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "run_id": run_id,
                "source": source,
            }
        )

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        if isinstance(response, Exception):
            raise response

        logger.debug(
            "mock_llm_call",
            response_index=self._response_index - 1,
            content_preview=response.content[:50],
        )
        return response

    def reset(self) -> None:
        """Reset the mock to start returning responses from the beginning."""
        self._response_index = 0
        self.call_history.clear()
