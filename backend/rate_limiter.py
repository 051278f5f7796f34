"""Sliding-window rate limiter for stage agent LLM calls.

Several worker loops may run stage agents at once; they share one limiter
so that requests-per-minute and tokens-per-minute quotas hold across the
whole process.

Usage:
    >>> from rate_limiter import get_rate_limiter
    >>> limiter = get_rate_limiter()
    >>> reservation = await limiter.acquire(estimated_tokens=1500)
    >>> # ... make LLM call ...
    >>> limiter.record_usage(reservation, tokens_used=1234)
"""

import asyncio
import itertools
import time
from dataclasses import dataclass

import structlog

from config import settings
from errors import SagaError

logger = structlog.get_logger(__name__)

WINDOW_SECONDS = 60.0


class RateLimitExceededError(SagaError):
    """Raised when the rate limiter wait deadline is exceeded."""


@dataclass
class Reservation:
    """A slot taken in the sliding window.

    Attributes:
        id: Identifier used to correct the token count after the call.
        timestamp: Monotonic time the slot was taken.
        tokens: Estimated tokens, replaced by the actual count later.
    """

    id: int
    timestamp: float
    tokens: int


class RateLimiter:
    """Requests-per-minute and tokens-per-minute limiter.

    Reservations older than the window are pruned on every access. When a
    limit would be exceeded, ``acquire()`` sleeps until the oldest
    reservation leaves the window or the deadline passes.

    Attributes:
        max_calls_per_minute: Maximum calls in any 60-second window.
        max_tokens_per_minute: Maximum tokens in any 60-second window.
    """

    def __init__(
        self,
        max_calls_per_minute: int = 30,
        max_tokens_per_minute: int = 100_000,
    ) -> None:
        self.max_calls_per_minute = max_calls_per_minute
        self.max_tokens_per_minute = max_tokens_per_minute
        self._reservations: dict[int, Reservation] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

        logger.info(
            "rate_limiter_initialized",
            max_rpm=max_calls_per_minute,
            max_tpm=max_tokens_per_minute,
        )

    def _prune(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        expired = [rid for rid, r in self._reservations.items() if r.timestamp < cutoff]
        for rid in expired:
            del self._reservations[rid]

    @property
    def current_rpm(self) -> int:
        return len(self._reservations)

    @property
    def current_tpm(self) -> int:
        return sum(r.tokens for r in self._reservations.values())

    def _has_capacity(self, estimated_tokens: int) -> bool:
        return (
            self.current_rpm < self.max_calls_per_minute
            and self.current_tpm + estimated_tokens <= self.max_tokens_per_minute
        )

    def _seconds_until_slot_frees(self, now: float) -> float:
        if not self._reservations:
            return 0.1
        oldest = min(r.timestamp for r in self._reservations.values())
        return max(oldest + WINDOW_SECONDS - now, 0.1)

    async def acquire(
        self,
        estimated_tokens: int = 1000,
        max_wait_seconds: float = 120.0,
    ) -> Reservation:
        """Wait for capacity, then reserve a slot.

        Args:
            estimated_tokens: Token estimate for the upcoming call.
            max_wait_seconds: Give up after waiting this long.

        Returns:
            The reservation, to be passed to ``record_usage``.

        Raises:
            RateLimitExceededError: If the deadline passes first.
        """
        deadline = time.monotonic() + max_wait_seconds

        while True:
            async with self._lock:
                now = time.monotonic()
                self._prune(now)
                if self._has_capacity(estimated_tokens):
                    reservation = Reservation(next(self._ids), now, estimated_tokens)
                    self._reservations[reservation.id] = reservation
                    return reservation
                if now >= deadline:
                    raise RateLimitExceededError(
                        f"Rate limiter wait exceeded {max_wait_seconds}s deadline"
                    )
                wait_seconds = min(self._seconds_until_slot_frees(now), deadline - now)

            logger.info(
                "rate_limiter_waiting",
                wait_seconds=round(wait_seconds, 2),
                current_rpm=self.current_rpm,
                current_tpm=self.current_tpm,
            )
            await asyncio.sleep(wait_seconds)

    def record_usage(self, reservation: Reservation, tokens_used: int) -> None:
        """Replace a reservation's estimate with the tokens actually used."""
        tracked = self._reservations.get(reservation.id)
        if tracked is not None:
            tracked.tokens = tokens_used

    def get_status(self) -> dict[str, int]:
        """Current window usage and configured limits."""
        self._prune(time.monotonic())
        return {
            "current_rpm": self.current_rpm,
            "current_tpm": self.current_tpm,
            "max_rpm": self.max_calls_per_minute,
            "max_tpm": self.max_tokens_per_minute,
        }


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get the global RateLimiter, created from ``config.settings`` on first use."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(
            max_calls_per_minute=settings.llm_rate_limit_rpm,
            max_tokens_per_minute=settings.llm_rate_limit_tpm,
        )
    return _rate_limiter


def reset_rate_limiter() -> None:
    global _rate_limiter
    _rate_limiter = None
