"""
Capped exponential backoff for transient ledger failures.

The policy only computes delays; callers own the loop so each attempt can
re-check persisted state before touching the remote API.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime


@dataclass(frozen=True)
class RetryPolicy:
    """
    ``max_attempts`` counts the first try.  Attempt n (1-based) that fails
    waits ``min(max_delay, base_delay * 2 ** (n - 1))`` before attempt n + 1,
    stretched to honour a server Retry-After hint (itself capped at
    ``max_delay``).
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if retry_after is not None and retry_after > delay:
            delay = min(retry_after, self.max_delay)
        return delay

    def has_attempts_left(self, attempt: int) -> bool:
        return attempt < self.max_attempts


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    return max(0.0, (when - reference).total_seconds())
