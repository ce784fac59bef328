"""
levelbot.engine.daily_cap — Business-Day Clock & Tier Resolution
=================================================================

Pure functions, no I/O.  Everything here takes the current instant as an
argument so tests can walk the clock across reset boundaries and DST
transitions.

The business day is a fixed-offset zone with the US daylight-saving rule
(second Sunday of March 02:00 local standard time → first Sunday of
November 02:00 local daylight time).  A day does not roll at midnight: it
rolls at the configured ``reset_hour:reset_minute`` local time, so a
timestamp earlier than that belongs to the previous calendar date.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from datetime import UTC, date, datetime, timedelta

from levelbot.config import BusinessClock, TierConfig

_SUNDAY = 6
_TRANSITION_HOUR = 2


def _nth_sunday(year: int, month: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (_SUNDAY - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def dst_bounds(year: int, clock: BusinessClock) -> tuple[datetime, datetime]:
    """UTC instants at which daylight time starts and ends in *year*."""
    standard = timedelta(hours=clock.standard_offset_hours)
    daylight = standard + timedelta(hours=1)

    start_local = datetime.combine(_nth_sunday(year, 3, 2), datetime.min.time()).replace(
        hour=_TRANSITION_HOUR
    )
    end_local = datetime.combine(_nth_sunday(year, 11, 1), datetime.min.time()).replace(
        hour=_TRANSITION_HOUR
    )
    return (start_local - standard).replace(tzinfo=UTC), (end_local - daylight).replace(tzinfo=UTC)


def is_daylight_saving(now: datetime, clock: BusinessClock) -> bool:
    """Whether daylight time is in force at the UTC instant *now*."""
    if not clock.observe_dst:
        return False
    now = now.astimezone(UTC)
    start, end = dst_bounds(now.year, clock)
    return start <= now < end


def utc_offset(now: datetime, clock: BusinessClock) -> timedelta:
    """Local offset from UTC at *now*."""
    hours = clock.standard_offset_hours + (1 if is_daylight_saving(now, clock) else 0)
    return timedelta(hours=hours)


def local_time(now: datetime, clock: BusinessClock) -> datetime:
    """Naive local wall-clock time for the UTC instant *now*."""
    now = now.astimezone(UTC)
    return (now + utc_offset(now, clock)).replace(tzinfo=None)


def business_day(now: datetime, clock: BusinessClock) -> date:
    """The business day *now* falls in.

    Local times before the reset boundary belong to the previous date.
    """
    local = local_time(now, clock)
    if (local.hour, local.minute) < (clock.reset_hour, clock.reset_minute):
        local -= timedelta(days=1)
    return local.date()


def day_key(now: datetime, clock: BusinessClock) -> str:
    """``YYYY-MM-DD`` string of :func:`business_day`."""
    return business_day(now, clock).isoformat()


def _local_to_utc(local: datetime, clock: BusinessClock) -> datetime:
    standard = timedelta(hours=clock.standard_offset_hours)
    as_daylight = (local - standard - timedelta(hours=1)).replace(tzinfo=UTC)
    if is_daylight_saving(as_daylight, clock):
        return as_daylight
    return (local - standard).replace(tzinfo=UTC)


def next_reset_instant(now: datetime, clock: BusinessClock) -> datetime:
    """First UTC instant strictly after *now* at which the business day rolls.

    The offset is evaluated at the candidate instant, not at *now*, so a
    reset scheduled across a DST change still lands on local wall time.
    """
    now = now.astimezone(UTC)
    local = local_time(now, clock)
    candidate = local.replace(
        hour=clock.reset_hour, minute=clock.reset_minute, second=0, microsecond=0
    )
    while True:
        instant = _local_to_utc(candidate, clock)
        if instant > now:
            return instant
        candidate += timedelta(days=1)


def seconds_until_reset(now: datetime, clock: BusinessClock) -> float:
    return (next_reset_instant(now, clock) - now.astimezone(UTC)).total_seconds()


# ---------------------------------------------------------------------------
# Tier resolution
# ---------------------------------------------------------------------------
def resolve_tier(role_ids: Collection[int], tiers: Iterable[TierConfig]) -> TierConfig | None:
    """Highest-ranked tier among *tiers* whose role is in *role_ids*."""
    for tier in sorted(tiers, key=lambda t: t.rank, reverse=True):
        if tier.daily_cap > 0 and tier.role_id in role_ids:
            return tier
    return None


def resolve_daily_cap(
    role_ids: Collection[int], tiers: Iterable[TierConfig], base_cap: int
) -> int:
    """Daily cap for a member holding *role_ids*; *base_cap* without a tier."""
    tier = resolve_tier(role_ids, tiers)
    return tier.daily_cap if tier else base_cap
