"""
Poll Cadence
============

Pure time arithmetic for the scheduler: regular poll intervals and RSS
skipHours / skipDays blackout windows. Blackouts are evaluated in UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import AbstractSet, Optional

from ..config.settings import PollingSettings
from ..database.models import Weekday


def regular_interval(ttl: Optional[int], settings: PollingSettings) -> timedelta:
    """Interval between successful polls: the feed's ttl or the default, floored."""
    minutes = ttl or settings.default_interval_minutes
    return timedelta(minutes=max(minutes, settings.min_interval_minutes))


def next_regular_poll(
    reference: datetime, ttl: Optional[int], settings: PollingSettings
) -> datetime:
    return reference + regular_interval(ttl, settings)


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def is_blacked_out(
    moment: datetime,
    skip_hours: AbstractSet[int],
    skip_days: AbstractSet[Weekday],
) -> bool:
    moment = _utc(moment)
    return moment.hour in skip_hours or Weekday.from_datetime(moment) in skip_days


def is_permanent_blackout(
    skip_hours: AbstractSet[int], skip_days: AbstractSet[Weekday]
) -> bool:
    """True when no hour of the week is left open for polling."""
    return len(set(skip_hours) & set(range(24))) == 24 or len(set(skip_days)) == 7


def blackout_deferral(
    now: datetime,
    skip_hours: AbstractSet[int],
    skip_days: AbstractSet[Weekday],
) -> Optional[datetime]:
    """Return when a poll blocked at ``now`` may run, or None if it may run now.

    The deferral lands on the first whole UTC hour outside every blackout
    window. A permanent blackout yields None so that it is ignored.
    """
    if not skip_hours and not skip_days:
        return None
    if not is_blacked_out(now, skip_hours, skip_days):
        return None
    if is_permanent_blackout(skip_hours, skip_days):
        return None

    candidate = _utc(now).replace(minute=0, second=0, microsecond=0)
    # One week plus a day covers every combination of hour and weekday
    for _ in range(24 * 8):
        candidate += timedelta(hours=1)
        if not is_blacked_out(candidate, skip_hours, skip_days):
            return candidate
    return None
