"""Sliding-window rate limiter shared by all LLM collaborators.

Researchers run concurrently, so several calls may hold reservations at once.
Each ``acquire`` returns a reservation handle and ``record_usage`` corrects the
estimate of that exact reservation once the provider reports real usage.

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

logger = structlog.get_logger(__name__)

WINDOW_SECONDS = 60.0


class RateLimitExceededError(Exception):
    """Raised when the rate limiter wait deadline is exceeded."""


@dataclass
class _Reservation:
    handle: int
    timestamp: float
    tokens: int


class RateLimiter:
    """Requests-per-minute and tokens-per-minute limiter.

    Both limits are enforced over a sliding 60 second window. When either
    would be exceeded, ``acquire`` sleeps until the oldest reservation leaves
    the window or the caller's deadline passes.

    Attributes:
        max_calls_per_minute: Maximum API calls allowed per window.
        max_tokens_per_minute: Maximum tokens allowed per window.
    """

    def __init__(
        self,
        max_calls_per_minute: int = 30,
        max_tokens_per_minute: int = 100_000,
    ) -> None:
        self.max_calls_per_minute = max_calls_per_minute
        self.max_tokens_per_minute = max_tokens_per_minute

        self._window: list[_Reservation] = []
        self._handles = itertools.count(1)
        self._lock = asyncio.Lock()

        logger.debug(
            "rate_limiter_initialized",
            max_rpm=max_calls_per_minute,
            max_tpm=max_tokens_per_minute,
        )

    def _prune(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        self._window = [entry for entry in self._window if entry.timestamp >= cutoff]

    def _window_tokens(self) -> int:
        return sum(entry.tokens for entry in self._window)

    def _has_capacity(self, estimated_tokens: int) -> bool:
        if len(self._window) >= self.max_calls_per_minute:
            return False
        # A single request larger than the whole budget may run on an empty window.
        if not self._window:
            return True
        return self._window_tokens() + estimated_tokens <= self.max_tokens_per_minute

    async def acquire(
        self,
        estimated_tokens: int = 1000,
        max_wait_seconds: float = 120.0,
    ) -> int:
        """Wait for capacity, then reserve it.

        Args:
            estimated_tokens: Token estimate used until real usage is known.
            max_wait_seconds: Give up after this long.

        Returns:
            A handle identifying the reservation for ``record_usage``.

        Raises:
            RateLimitExceededError: If the deadline passes before capacity frees up.
        """
        deadline = time.monotonic() + max_wait_seconds

        while True:
            async with self._lock:
                now = time.monotonic()
                self._prune(now)

                if self._has_capacity(estimated_tokens):
                    reservation = _Reservation(next(self._handles), now, estimated_tokens)
                    self._window.append(reservation)
                    logger.debug(
                        "rate_limiter_acquired",
                        current_rpm=len(self._window),
                        current_tpm=self._window_tokens(),
                        estimated_tokens=estimated_tokens,
                    )
                    return reservation.handle

                if now >= deadline:
                    raise RateLimitExceededError(
                        f"Rate limiter wait exceeded {max_wait_seconds}s deadline"
                    )

                oldest = min(entry.timestamp for entry in self._window)
                wait_seconds = max(oldest + WINDOW_SECONDS - now, 0.1)
                wait_seconds = min(wait_seconds, deadline - now)

            logger.info("rate_limiter_waiting", wait_seconds=round(wait_seconds, 2))
            await asyncio.sleep(wait_seconds)

    def record_usage(self, handle: int, tokens_used: int) -> None:
        """Replace the estimate of reservation ``handle`` with actual usage.

        Reservations that already left the window are ignored.
        """
        for entry in self._window:
            if entry.handle == handle:
                entry.tokens = tokens_used
                logger.debug(
                    "rate_limiter_usage_recorded",
                    tokens_used=tokens_used,
                    current_tpm=self._window_tokens(),
                )
                return

    def get_status(self) -> dict[str, int]:
        """Return current usage and configured limits."""
        self._prune(time.monotonic())
        return {
            "current_rpm": len(self._window),
            "current_tpm": self._window_tokens(),
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
    """Reset the global RateLimiter. Primarily useful for testing."""
    global _rate_limiter
    _rate_limiter = None
