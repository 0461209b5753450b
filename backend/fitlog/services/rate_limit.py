"""
Rate-limit governor for provider API calls.

The governor looks at one HTTP response and returns what the caller should
do next: proceed, wait a given number of milliseconds and re-issue the same
request, or give up. It never sleeps and never retries on its own.

Strava reports usage as ``X-RateLimit-Usage: <15min>,<daily>`` and limits as
``X-RateLimit-Limit: <15min>,<daily>``. Those counters are approximate, so
they are only logged. Backoff starts on an explicit 429.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Mapping, Optional, Tuple, Union

import httpx

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUS = 429
# Strava's short window is 15 minutes; a longer Retry-After ends the attempt
MAX_RETRY_AFTER_MS = 15 * 60 * 1000


@dataclass(frozen=True)
class Proceed:
    """The response is usable."""


@dataclass(frozen=True)
class Wait:
    """Sleep ``ms`` milliseconds, then re-issue the identical request."""

    ms: int


@dataclass(frozen=True)
class Abort:
    """Stop retrying. The run should pause and hand back a cursor."""

    reason: str


Decision = Union[Proceed, Wait, Abort]


@dataclass
class RateLimitState:
    """Usage counters reported by the provider for its rolling windows."""

    short_usage: Optional[int] = None
    short_limit: Optional[int] = None
    daily_usage: Optional[int] = None
    daily_limit: Optional[int] = None
    wait_ms: int = 0

    def as_dict(self) -> dict:
        return {
            "short_usage": self.short_usage,
            "short_limit": self.short_limit,
            "daily_usage": self.daily_usage,
            "daily_limit": self.daily_limit,
            "wait_ms": self.wait_ms,
        }


def _parse_pair(value: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    if not value:
        return None, None
    parts = [p.strip() for p in value.split(",")]
    try:
        first = int(parts[0]) if parts[0] else None
        second = int(parts[1]) if len(parts) > 1 and parts[1] else None
    except ValueError:
        return None, None
    return first, second


def parse_usage(headers: Mapping[str, str]) -> RateLimitState:
    """Read the provider's usage and limit headers."""
    short_usage, daily_usage = _parse_pair(headers.get("X-RateLimit-Usage"))
    short_limit, daily_limit = _parse_pair(headers.get("X-RateLimit-Limit"))
    return RateLimitState(
        short_usage=short_usage,
        short_limit=short_limit,
        daily_usage=daily_usage,
        daily_limit=daily_limit,
    )


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    """
    Convert a Retry-After header to milliseconds.

    Accepts delta-seconds or an HTTP date. Returns None when the header is
    missing, unreadable or not a finite number.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        seconds = (when - now).total_seconds()

    if not math.isfinite(seconds):
        return None
    return max(0, int(round(seconds * 1000)))


class RateLimitGovernor:
    """
    Decides how to react to a provider response.

    Args:
        max_retries: Rate-limited attempts allowed before giving up
        base_backoff_ms: First backoff when no Retry-After header is sent
        max_backoff_ms: Ceiling for exponential backoff
        max_wait_ms: Longest Retry-After honored; longer waits abort
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_backoff_ms: int = 1000,
        max_backoff_ms: int = 30000,
        max_wait_ms: int = MAX_RETRY_AFTER_MS,
    ):
        self.max_retries = max_retries
        self.base_backoff_ms = base_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.max_wait_ms = max_wait_ms
        self.last_state = RateLimitState()

    def backoff_ms(self, attempt: int) -> int:
        """Exponential backoff for the given zero-based attempt, capped."""
        return min(self.base_backoff_ms * (2 ** attempt), self.max_backoff_ms)

    def decide(
        self,
        response: httpx.Response,
        attempt: int = 0,
        remaining_ms: Optional[int] = None,
    ) -> Decision:
        """
        Decide what to do after ``response``.

        Args:
            response: Provider response
            attempt: Zero-based count of rate-limited attempts so far
            remaining_ms: Time left in the run budget, if bounded

        Returns:
            Proceed, Wait(ms) or Abort(reason)
        """
        state = parse_usage(response.headers)
        self.last_state = state

        if state.short_usage is not None:
            logger.debug(
                "Rate limit usage: %s/%s (15min), %s/%s (daily)",
                state.short_usage,
                state.short_limit,
                state.daily_usage,
                state.daily_limit,
            )

        if response.status_code != RATE_LIMIT_STATUS:
            return Proceed()

        if attempt >= self.max_retries:
            logger.warning("Rate limited %d times, giving up on this request", attempt + 1)
            return Abort("retry budget exhausted")

        wait_ms = parse_retry_after(response.headers.get("Retry-After"))
        if wait_ms is None:
            wait_ms = self.backoff_ms(attempt)
        state.wait_ms = wait_ms

        if wait_ms > self.max_wait_ms:
            logger.warning("Retry-After of %dms exceeds the %dms ceiling", wait_ms, self.max_wait_ms)
            return Abort("wait exceeds ceiling")

        if remaining_ms is not None and wait_ms > remaining_ms:
            logger.warning("Rate limit wait of %dms exceeds remaining budget of %dms", wait_ms, remaining_ms)
            return Abort("wait exceeds time budget")

        logger.info("Rate limited, waiting %dms before retry %d", wait_ms, attempt + 1)
        return Wait(wait_ms)
