"""Time helpers: timestamps, TTL arithmetic and retry backoff.

Everything here is pure apart from the ``Clock`` object, which bundles the
three side-effecting time primitives (wall clock, monotonic clock and sleep)
so they can be swapped out in tests.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

# Default backoff configuration
INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.1


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as an ISO-8601 string in UTC.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(text: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Args:
        text: Timestamp such as ``2024-10-19T16:45:35+00:00``. A trailing
            ``Z`` and naive values are accepted and treated as UTC.

    Returns:
        Timezone-aware datetime in UTC.

    Raises:
        ValueError: If the text is not a valid ISO-8601 timestamp.
    """
    text = text.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def expires_at(fetched_at: datetime, ttl: Optional[float]) -> Optional[datetime]:
    """Compute the expiry instant of something fetched at ``fetched_at``.

    Args:
        fetched_at: When the value was fetched.
        ttl: Time-to-live in seconds, or None for "never expires".

    Returns:
        The expiry datetime, or None when there is no TTL.
    """
    if ttl is None:
        return None
    return fetched_at + timedelta(seconds=ttl)


def is_expired(fetched_at: datetime, ttl: Optional[float], now: Optional[datetime] = None) -> bool:
    """Check whether a TTL has elapsed.

    An entry is expired once ``now`` reaches its expiry instant. Entries
    without a TTL never expire.
    """
    deadline = expires_at(fetched_at, ttl)
    if deadline is None:
        return False
    return (now or utc_now()) >= deadline


def remaining_ttl(
    fetched_at: datetime, ttl: Optional[float], now: Optional[datetime] = None
) -> Optional[float]:
    """Seconds left before expiry, clamped at zero (None without a TTL)."""
    deadline = expires_at(fetched_at, ttl)
    if deadline is None:
        return None
    return max(0.0, (deadline - (now or utc_now())).total_seconds())


def calculate_backoff(
    attempt: int,
    initial: float = INITIAL_BACKOFF_SECONDS,
    multiplier: float = BACKOFF_MULTIPLIER,
    maximum: float = MAX_BACKOFF_SECONDS,
    jitter: float = DEFAULT_JITTER,
    retry_after: Optional[float] = None,
    rng: Optional[Callable[[], float]] = None,
) -> float:
    """Calculate the delay before the next retry.

    The delay grows exponentially with the attempt number and is capped at
    ``maximum``. A jitter fraction spreads retries of concurrent workers: with
    ``jitter=0.1`` the result lies within +/-10% of the nominal delay.

    Args:
        attempt: Number of the attempt that just failed (0-indexed).
        initial: Delay after the first failure, in seconds.
        multiplier: Growth factor between attempts.
        maximum: Upper bound for the nominal delay.
        jitter: Fraction of the delay to randomise, 0 disables jitter.
        retry_after: Server-provided delay which replaces the computed one,
            still capped at ``maximum``.
        rng: Source of uniform floats in [0, 1), ``random.random`` by default.

    Returns:
        Seconds to wait before retrying, never negative.

    Examples:
        >>> calculate_backoff(0, jitter=0)
        1.0
        >>> calculate_backoff(3, jitter=0)
        8.0
        >>> calculate_backoff(10, jitter=0)
        60.0
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")

    if retry_after is not None:
        return min(max(0.0, float(retry_after)), maximum)

    delay = min(initial * (multiplier ** attempt), maximum)
    if jitter > 0:
        draw = (rng or random.random)()
        delay += delay * jitter * (2.0 * draw - 1.0)
    return max(0.0, delay)


@dataclass
class Clock:
    """Injectable time source.

    Attributes:
        now: Returns the current aware UTC datetime.
        monotonic: Returns a monotonic reading in seconds.
        sleep: Blocks for the given number of seconds.
    """

    now: Callable[[], datetime] = field(default=utc_now)
    monotonic: Callable[[], float] = field(default=time.monotonic)
    sleep: Callable[[float], None] = field(default=time.sleep)


__all__ = [
    "Clock",
    "calculate_backoff",
    "expires_at",
    "format_timestamp",
    "is_expired",
    "parse_timestamp",
    "remaining_ttl",
    "utc_now",
]
