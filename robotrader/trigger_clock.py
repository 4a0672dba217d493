"""
Trigger time arithmetic.

Converts "local wall-clock time in timezone Z" into the next UTC instant at
which a recurring job is due. DST transitions are resolved with pytz by
looking at both interpretations of the local timestamp and picking the
earliest one that is still in the future.
"""

import logging
from datetime import date, datetime, time as dt_time, timedelta
from typing import Iterable, List, Optional, Union

import pytz

logger = logging.getLogger(__name__)

# Returned when no valid interpretation of a local time exists. Callers treat
# it as "due immediately"; it is not expected to happen in practice.
FAR_PAST = datetime(1970, 1, 1, tzinfo=pytz.UTC)

TzLike = Union[str, pytz.BaseTzInfo]


def get_timezone(tz: TzLike) -> pytz.BaseTzInfo:
    """Accept a zone name or an already constructed pytz zone."""
    if isinstance(tz, str):
        return pytz.timezone(tz)
    return tz


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def _interpretations(tz: pytz.BaseTzInfo, naive: datetime) -> List[datetime]:
    """
    All UTC instants a naive local timestamp can denote, sorted.

    Ordinary times yield one instant and ambiguous (fall-back) times two.
    A non-existent (spring-forward) time maps to the single instant obtained
    with the pre-gap standard offset, i.e. the wall clock shifted forward by
    the gap (02:30 becomes 03:30 daylight time).
    """
    try:
        return [tz.localize(naive, is_dst=None).astimezone(pytz.UTC)]
    except pytz.NonExistentTimeError:
        return [tz.localize(naive, is_dst=False).astimezone(pytz.UTC)]
    except pytz.AmbiguousTimeError:
        return sorted(
            tz.localize(naive, is_dst=is_dst).astimezone(pytz.UTC)
            for is_dst in (True, False)
        )


def next_occurrence(
    tz: TzLike,
    local_time: dt_time,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Next UTC instant at which the wall clock in ``tz`` shows ``local_time``.

    Today's occurrence is used only if the local clock is strictly before
    ``local_time``; an exact match rolls over to tomorrow.

    Args:
        tz: Timezone name or pytz zone
        local_time: Naive local time of day
        now: Reference instant (UTC-aware), defaults to current time

    Returns:
        Timezone-aware UTC datetime, or FAR_PAST if no valid interpretation
    """
    zone = get_timezone(tz)
    now = now or utc_now()
    now_local = now.astimezone(zone)

    if now_local.time() < local_time:
        target_day = now_local.date()
    else:
        target_day = now_local.date() + timedelta(days=1)

    naive_target = datetime.combine(target_day, local_time)
    candidates = [c for c in _interpretations(zone, naive_target) if c > now]
    if not candidates:
        logger.warning(
            "No valid future interpretation of %s %s, treating as due now",
            naive_target.isoformat(), zone.zone,
        )
        return FAR_PAST
    return candidates[0]


def earliest_of(instants: Iterable[datetime]) -> datetime:
    """Minimum of a non-empty collection of instants."""
    instants = list(instants)
    if not instants:
        raise ValueError("earliest_of() requires at least one instant")
    return min(instants)


def next_of_daily_times(
    tz: TzLike,
    local_times: Iterable[dt_time],
    now: Optional[datetime] = None,
) -> datetime:
    """Soonest upcoming occurrence among several daily checkpoints."""
    now = now or utc_now()
    return earliest_of(next_occurrence(tz, t, now) for t in local_times)


def local_today(tz: TzLike, now: Optional[datetime] = None) -> date:
    """Calendar date in ``tz`` at ``now``."""
    now = now or utc_now()
    return now.astimezone(get_timezone(tz)).date()


def is_near_local_time(
    tz: TzLike,
    local_time: dt_time,
    tolerance_seconds: float,
    now: Optional[datetime] = None,
) -> bool:
    """
    True if ``now`` is within ``tolerance_seconds`` of today's ``local_time``.

    Used to decide live trading vs simulation for a triggered run.
    """
    zone = get_timezone(tz)
    now = now or utc_now()
    naive_target = datetime.combine(now.astimezone(zone).date(), local_time)
    target = _interpretations(zone, naive_target)[0]
    return abs((now - target).total_seconds()) < tolerance_seconds
