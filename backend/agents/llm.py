"""LLM client used by the stage agents.

This module provides:
- LLMClient: Wrapper around LiteLLM with rate limiting, retry with
  exponential backoff, an optional fallback model, and usage/cost metrics
- MockLLMClient: Canned per-stage answers for tests and offline runs
- extract_json_from_response: Pull the JSON object out of a model reply
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import litellm
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
from rate_limiter import RateLimiter, RateLimitExceededError, get_rate_limiter

logger = structlog.get_logger(__name__)

RETRYABLE_ERRORS = (RateLimitError, ServiceUnavailableError, Timeout)
NON_RETRYABLE_ERRORS = (AuthenticationError, BadRequestError)


@dataclass
class LLMMetrics:
    """Usage of a single LLM call."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    cost: float = 0.0


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        finish_reason: Why the model stopped (stop, length, etc.)
        metrics: Token usage, cost and latency
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Wrapper around LiteLLM with retry logic, rate limiting, fallback, and metrics.

    Retries on: RateLimitError (429), ServiceUnavailableError (5xx), Timeout.
    Does NOT retry on: AuthenticationError, BadRequestError.

    Attributes:
        default_model: Model used when a call does not name one.
        fallback_model: Model tried once after the primary exhausted retries.
        retry_attempts: Number of retries for transient errors.
        retry_delay: Base delay for exponential backoff, in seconds.
        rate_limiter: Shared RateLimiter.
    """

    def __init__(
        self,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.default_model = default_model or settings.default_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.llm_max_retries
        )
        self.retry_delay = retry_delay
        self.rate_limiter = rate_limiter or get_rate_limiter()

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        json_mode: bool = True,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Make an LLM call with rate limiting, retries and fallback.

        Args:
            messages: Chat messages with 'role' and 'content'.
            model: Model to use (defaults to self.default_model).
            temperature: Sampling temperature.
            max_tokens: Maximum tokens in the response.
            json_mode: Ask the provider for a JSON object response.
            agent_id: Stage agent making the call, for logs.

        Returns:
            LLMResponse with content and metrics.

        Raises:
            RateLimitExceededError: If no rate limit slot frees up in time.
            AuthenticationError, BadRequestError: Immediately, without retry.
            Exception: The last transient error once retries and fallback
                are exhausted.
        """
        model = model or self.default_model
        start_time = time.time()
        estimated_tokens = max(sum(len(str(m.get("content", ""))) for m in messages) // 4, 500)

        try:
            reservation = await self.rate_limiter.acquire(estimated_tokens=estimated_tokens)
        except RateLimitExceededError as e:
            logger.error("llm_call_rate_limit_exceeded", model=model, agent_id=agent_id, error=str(e))
            raise

        last_exception: Exception | None = None
        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(messages, model, temperature, max_tokens, json_mode)
            except RETRYABLE_ERRORS as e:
                last_exception = e
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2**attempt), 4.0)
                    logger.warning(
                        "llm_call_retry",
                        model=model,
                        agent_id=agent_id,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                        retry_delay=delay,
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        agent_id=agent_id,
                        attempts=self.retry_attempts + 1,
                        error=str(e),
                    )
                continue
            except NON_RETRYABLE_ERRORS as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    agent_id=agent_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

            llm_response = self._parse_response(response, model, start_time)
            self.rate_limiter.record_usage(
                reservation, llm_response.metrics.input_tokens + llm_response.metrics.output_tokens
            )
            logger.info(
                "llm_call_complete",
                model=model,
                agent_id=agent_id,
                input_tokens=llm_response.metrics.input_tokens,
                output_tokens=llm_response.metrics.output_tokens,
                latency_ms=llm_response.metrics.latency_ms,
                attempt=attempt + 1,
            )
            return llm_response

        if self.fallback_model and self.fallback_model != model:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=self.fallback_model,
                primary_error=str(last_exception),
            )
            try:
                reservation = await self.rate_limiter.acquire(estimated_tokens=estimated_tokens)
                response = await self._make_request(
                    messages, self.fallback_model, temperature, max_tokens, json_mode
                )
            except Exception as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error_type=type(fallback_error).__name__,
                    error=str(fallback_error),
                )
            else:
                llm_response = self._parse_response(response, self.fallback_model, start_time)
                self.rate_limiter.record_usage(
                    reservation,
                    llm_response.metrics.input_tokens + llm_response.metrics.output_tokens,
                )
                logger.info("llm_fallback_success", fallback_model=self.fallback_model)
                return llm_response

        raise last_exception or RuntimeError("LLM call failed after all retries")

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
        json_mode: bool,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return await acompletion(**kwargs)

    def _parse_response(self, response: ModelResponse, model: str, start_time: float) -> LLMResponse:
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason or "unknown",
            metrics=LLMMetrics(
                model=model,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                latency_ms=int((time.time() - start_time) * 1000),
                cost=_completion_cost(response, model),
            ),
            raw_response=response,
        )


def _completion_cost(response: ModelResponse, model: str) -> float:
    # LiteLLM raises for models missing from its price map.
    try:
        return float(litellm.completion_cost(completion_response=response))
    except Exception as e:
        logger.debug("llm_cost_unavailable", model=model, error=str(e))
        return 0.0


def _extract_balanced_json_objects(text: str) -> list[str]:
    """Extract balanced JSON object candidates from arbitrary text."""
    candidates: list[str] = []
    n = len(text)

    for start in range(n):
        if text[start] != "{":
            continue

        depth = 0
        in_string = False
        escaped = False

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract the JSON object from a model reply that may contain extra text.

    Tries, in order: the whole reply, fenced ```json blocks, then balanced
    ``{...}`` spans.

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

    for match in re.finditer(r"```(?:json)?\s*([\s\S]*?)\s*```", response, re.IGNORECASE):
        parsed = try_parse(match.group(1).strip())
        if parsed is not None:
            return parsed

    for candidate in _extract_balanced_json_objects(response):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None


MOCK_STAGE_RESULTS: dict[str, dict[str, Any]] = {
    "persona_generator": {
        "personas": [
            {
                "name": "Growth-minded CTO",
                "description": "Leads a 40-person engineering team at a scale-up.",
                "demographics": {"age": "35-45", "gender": "F", "profession": "CTO"},
                "score": 86,
            },
            {
                "name": "Operations Manager",
                "description": "Owns tooling budgets for back-office teams.",
                "demographics": {"age": 41, "gender": "M", "profession": "Ops manager"},
                "score": 74,
            },
        ]
    },
    "competitor_detector": {
        "competitors": [
            {
                "domain": f"competitor{i}.example",
                "title": f"Competitor {i}",
                "url": f"https://competitor{i}.example",
                "hasAds": i % 2 == 0,
                "validation": {
                    "alignmentScore": 90 - i * 10,
                    "reasoning": "Targets the same buyers.",
                    "offeringOverlap": "high" if i < 3 else "medium",
                    "marketOverlap": "national",
                },
            }
            for i in range(1, 6)
        ]
    },
    "competitor_analyst": {
        "market_overview": "Crowded mid-market with price-led messaging.",
        "strengths": ["Brand awareness", "Large sales teams"],
        "threats": ["Aggressive discounting"],
        "opportunities": ["Self-serve onboarding", "Vertical case studies"],
        "recommendations": ["Lead with time-to-value", "Invest in search"],
        "competitors": [],
    },
    "strategy_optimizer": {
        "strategy": {
            "positioning": "The fastest way for scale-ups to ship compliant payments.",
            "key_messages": ["Live in a week", "Compliance built in"],
            "recommended_channels": [
                {"channel": "search", "rationale": "High intent"},
                {"channel": "linkedin", "rationale": "Reaches technical buyers"},
            ],
            "timeline": [{"phase": "Launch", "duration": "4 weeks", "actions": ["Ads", "Webinar"]}],
            "budget_allocation": {"search": 0.5, "social": 0.3, "content": 0.2},
            "kpis": [{"name": "Qualified demos", "target": 120}],
            "quality_score": 82,
        }
    },
    "content_creator": {
        "assets": [
            {
                "asset_type": "google_ads",
                "content": {"headlines": ["Ship payments in a week"], "descriptions": ["Compliance built in."]},
                "variations": [{"headlines": ["Payments, minus the paperwork"]}],
                "quality_score": 78,
            },
            {
                "asset_type": "linkedin_post",
                "content": "Your engineers should build product, not payment rails.",
                "variations": [],
                "quality_score": 71,
            },
        ]
    },
}


class MockLLMClient(LLMClient):
    """Mock LLM client for tests and offline runs.

    Returns predefined responses in order when given, otherwise the canned
    result for the calling agent from ``MOCK_STAGE_RESULTS``.

    Usage:
        >>> client = MockLLMClient()
        >>> response = await client.call(messages=[...], agent_id="persona_generator")
    """

    def __init__(self, responses: list[LLMResponse] | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        json_mode: bool = True,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Return the next predefined response, or the agent's canned result.

        Raises:
            IndexError: If predefined responses were given and are used up.
        """
        self.call_history.append({"messages": messages, "model": model, "agent_id": agent_id})

        if self.responses:
            if self._response_index >= len(self.responses):
                raise IndexError("No more mock responses available")
            response = self.responses[self._response_index]
            self._response_index += 1
            return response

        result = MOCK_STAGE_RESULTS.get(agent_id or "", {})
        content = json.dumps(result, ensure_ascii=False)
        logger.debug("mock_llm_call", agent_id=agent_id, content_preview=content[:50])
        return LLMResponse(
            content=content,
            finish_reason="stop",
            metrics=LLMMetrics(
                model="mock",
                input_tokens=sum(len(str(m.get("content", ""))) for m in messages) // 4,
                output_tokens=len(content) // 4,
                latency_ms=1,
            ),
        )

    def reset(self) -> None:
        self._response_index = 0
        self.call_history.clear()
