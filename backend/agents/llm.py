"""LLM client and response-parsing helpers for the agent roles.

This module provides:
- LLMClient: Wrapper around LiteLLM with retry logic, fallback model
  support and metrics events
- MockLLMClient: Queue of canned responses for tests
- extract_json_from_response: Pull a JSON object out of free-form model text
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from events.bus import EventBus
from events.types import EventType, make_event

logger = structlog.get_logger()

RETRYABLE_ERRORS = (RateLimitError, ServiceUnavailableError, Timeout)
MAX_BACKOFF_SECONDS = 4.0


@dataclass
class LLMMetrics:
    """Token and latency metrics for a single LLM call."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


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
    """Chat completions for the agent roles through LiteLLM.

    Every successful call publishes ``llm:callComplete`` on the event bus,
    tagged with the task and role that made it.

    Attributes:
        event_bus: Receives the metrics events (optional)
        default_model: LiteLLM model string used when a call names none
        fallback_model: Tried once after the primary model's retries run out
        retry_attempts: Retries after the first transient failure
        retry_delay: Backoff base in seconds, doubled per retry
        request_timeout: Seconds passed to each provider request
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str = "openai/gpt-4o-mini",
        fallback_model: str | None = None,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        request_timeout: int = 120,
    ) -> None:
        self.event_bus = event_bus
        self.default_model = default_model
        self.fallback_model = fallback_model
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.request_timeout = request_timeout

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        task_id: str | None = None,
        agent: str | None = None,
    ) -> LLMResponse:
        """Complete ``messages``, retrying transient provider errors.

        Errors in ``RETRYABLE_ERRORS`` are retried with capped exponential
        backoff. Authentication and bad-request errors are raised at once.
        Once retries run out, a configured fallback model gets one attempt.

        Args:
            messages: Chat messages with 'role' and 'content'
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature
            max_tokens: Maximum tokens in the response
            task_id: Attached to the metrics event
            agent: Role name attached to the metrics event

        Raises:
            AuthenticationError: The provider rejected the credentials.
            BadRequestError: The provider rejected the request.
            Exception: The primary model's last transient error when retries
                and the fallback are exhausted.
        """
        model = model or self.default_model
        started = time.monotonic()
        last_error: Exception | None = None

        for attempt in range(self.retry_attempts + 1):
            if last_error is not None:
                delay = min(self.retry_delay * 2 ** (attempt - 1), MAX_BACKOFF_SECONDS)
                logger.warning(
                    "llm_call_retry",
                    model=model,
                    attempt=attempt + 1,
                    error_type=type(last_error).__name__,
                    retry_delay=delay,
                )
                await asyncio.sleep(delay)
            try:
                return await self._complete(
                    model, messages, temperature, max_tokens, started, task_id, agent
                )
            except RETRYABLE_ERRORS as e:
                last_error = e
            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_rejected",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

        logger.error(
            "llm_call_failed_all_retries",
            model=model,
            attempts=self.retry_attempts + 1,
            error=str(last_error),
        )
        if last_error is None:
            raise RuntimeError("LLM call made no attempts")
        if not self.fallback_model or self.fallback_model == model:
            raise last_error

        logger.warning("llm_fallback_attempt", primary_model=model, fallback_model=self.fallback_model)
        try:
            return await self._complete(
                self.fallback_model, messages, temperature, max_tokens, started, task_id, agent
            )
        except Exception as e:
            logger.error(
                "llm_fallback_failed",
                fallback_model=self.fallback_model,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise last_error from e

    async def _complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int | None,
        started: float,
        task_id: str | None,
        agent: str | None,
    ) -> LLMResponse:
        """One provider request, folded into an LLMResponse and announced."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": self.request_timeout,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        response = await acompletion(**kwargs)
        llm_response = self._parse_response(
            response, model, int((time.monotonic() - started) * 1000)
        )
        self._emit_metrics_event(llm_response.metrics, task_id, agent)
        logger.info(
            "llm_call_complete",
            model=model,
            agent=agent,
            task_id=task_id,
            total_tokens=llm_response.metrics.total_tokens,
            latency_ms=llm_response.metrics.latency_ms,
        )
        return llm_response

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        """Parse the LiteLLM response into our structured format."""
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

    def _emit_metrics_event(
        self,
        metrics: LLMMetrics,
        task_id: str | None,
        agent: str | None,
    ) -> None:
        if self.event_bus:
            self.event_bus.publish(
                make_event(
                    EventType.LLM_CALL_COMPLETE,
                    model=metrics.model,
                    input_tokens=metrics.input_tokens,
                    output_tokens=metrics.output_tokens,
                    latency_ms=metrics.latency_ms,
                    task_id=task_id,
                    agent=agent,
                )
            )


def _json_object_spans(text: str) -> list[str]:
    """Balanced ``{...}`` spans of ``text`` in order of their opening brace.

    Single pass over the text. Quotes only count inside an open brace, so
    prose around the JSON cannot flip the string state. Nested spans are
    kept, letting a broken outer object still yield a valid inner one.
    """
    spans: list[tuple[int, int]] = []
    opened: list[int] = []
    in_string = False
    escaped = False

    for index, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == "{":
            opened.append(index)
        elif not opened:
            continue
        elif ch == '"':
            in_string = True
        elif ch == "}":
            spans.append((opened.pop(), index + 1))

    spans.sort()
    return [text[start:end] for start, end in spans]


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract a JSON object from an LLM response that may contain extra text.

    Tries, in order: the whole response, the body of each fenced code block,
    then any balanced ``{...}`` span.

    Args:
        response: The full LLM response text

    Returns:
        Parsed JSON dict if found, None otherwise
    """
    def try_parse(candidate: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    parsed = try_parse(response.strip())
    if parsed is not None:
        return parsed

    fence_pattern = r"```(?:json)?\s*([\s\S]*?)\s*```"
    for match in re.finditer(fence_pattern, response, re.IGNORECASE):
        fenced_body = match.group(1).strip()
        parsed = try_parse(fenced_body)
        if parsed is not None:
            return parsed
        for candidate in _json_object_spans(fenced_body):
            parsed = try_parse(candidate)
            if parsed is not None:
                return parsed

    for candidate in _json_object_spans(response):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None


class MockLLMClient(LLMClient):
    """Replays canned responses in order and records every call.

    Metrics events are still published so event wiring can be tested
    without a provider.
    """

    def __init__(self, responses: list[LLMResponse] | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses or [])
        self.call_history: list[dict[str, Any]] = []
        self._next = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        task_id: str | None = None,
        agent: str | None = None,
    ) -> LLMResponse:
        """Return the next canned response.

        Raises:
            IndexError: When the script is exhausted.
        """
        self.call_history.append(
            {
                "messages": messages,
                "model": model or self.default_model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "task_id": task_id,
                "agent": agent,
            }
        )
        if self._next >= len(self.responses):
            raise IndexError(f"No scripted response left for call {len(self.call_history)}")

        response = self.responses[self._next]
        self._next += 1
        self._emit_metrics_event(response.metrics, task_id, agent)
        logger.debug("mock_llm_call", index=self._next - 1, agent=agent, task_id=task_id)
        return response
