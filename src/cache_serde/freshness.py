"""Freshness policy: decides whether a stored entry may still be served.

An entry is fresh while ``now - last_modified < interval``. Two edge
cases are fixed here:

* An interval of ``0`` is never fresh, so every call recomputes.
* When ``now`` is earlier than ``last_modified`` (clock skew, or a file
  copied in from another machine) the entry is treated as **fresh**.
  Recomputing on skew would make every call miss until the clocks agree
  again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Union

Interval = Union[int, float, timedelta]


def _to_timedelta(interval: Interval) -> timedelta:
    if not isinstance(interval, timedelta):
        interval = timedelta(seconds=interval)
    if interval < timedelta(0):
        raise ValueError(f"Invalidation interval must be non-negative, got {interval}")
    return interval


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def is_fresh(last_modified: datetime, now: datetime, invalidation_interval: Interval) -> bool:
    """Return ``True`` if an entry written at *last_modified* is still usable at *now*.

    Args:
        last_modified: When the entry was last written.
        now: The reference time.
        invalidation_interval: Seconds (or a :class:`~datetime.timedelta`)
            an entry stays fresh.

    Raises:
        ValueError: If the interval is negative.
    """
    interval = _to_timedelta(invalidation_interval)
    if interval == timedelta(0):
        return False
    elapsed = now - last_modified
    if elapsed < timedelta(0):
        return True
    return elapsed < interval


@dataclass
class FreshnessPolicy:
    """An invalidation interval bound to a clock.

    The clock is injectable so tests can move time without sleeping.

    Args:
        invalidation_interval: Seconds (or a timedelta) an entry stays fresh.
        clock: Zero-argument callable returning the current aware datetime.
    """

    invalidation_interval: Interval = 3600
    clock: Callable[[], datetime] = field(default=utcnow, repr=False)

    def __post_init__(self) -> None:
        self.invalidation_interval = _to_timedelta(self.invalidation_interval)

    def is_fresh(self, last_modified: datetime) -> bool:
        return is_fresh(last_modified, self.clock(), self.invalidation_interval)

    def age(self, last_modified: datetime) -> timedelta:
        """Elapsed time since *last_modified*, clamped at zero."""
        return max(self.clock() - last_modified, timedelta(0))
