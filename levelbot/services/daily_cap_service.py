"""
levelbot.services.daily_cap_service — Daily Cap Ledger & Reset Scheduler
=========================================================================

Tracks how much XP each member has earned in the current business day and
decides whether they may earn more.

* The cap is the base cap unless the member holds a tier role; the
  highest-ranked tier they hold wins.
* The business day rolls at the configured local reset time (see
  :mod:`levelbot.engine.daily_cap`), so a new day key naturally starts
  everyone at zero.
* :class:`DailyResetScheduler` sleeps until the next reset instant, runs
  :meth:`DailyCapLedger.reset_daily`, then arms a fresh one-shot timer.

Cap checks fail open: if the store is unreachable the member is allowed
to earn, and the failure is logged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

from sqlalchemy import Engine

from levelbot.config import LevelingConfig, TierConfig
from levelbot.database.engine import run_db
from levelbot.database.models import XPSource
from levelbot.engine import daily_cap
from levelbot.engine.cache import CacheLayer
from levelbot.services import xp_store

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def member_role_ids(member: Any) -> set[int]:
    """Role snowflakes held by a ``discord.Member`` (empty for ``None``)."""
    if member is None:
        return set()
    return {role.id for role in getattr(member, "roles", None) or ()}


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DailyCapStatus:
    allowed: bool
    current_xp: int
    daily_cap: int
    remaining: int
    percentage: int

    @property
    def is_at_cap(self) -> bool:
        return self.current_xp >= self.daily_cap


def build_cap_status(current_xp: int, cap: int) -> DailyCapStatus:
    """Derive the cap status for *current_xp* against *cap*."""
    remaining = max(0, cap - current_xp)
    percentage = round(current_xp / cap * 100) if cap > 0 else 100
    return DailyCapStatus(
        allowed=current_xp < cap,
        current_xp=current_xp,
        daily_cap=cap,
        remaining=remaining,
        percentage=percentage,
    )


@dataclass(frozen=True, slots=True)
class DailyStats:
    day: str
    total_xp: int
    message_xp: int
    voice_xp: int
    reaction_xp: int
    daily_cap: int
    remaining: int
    percentage: int
    is_at_cap: bool
    tier_rank: int
    tier_role_id: int | None
    next_reset: int  # unix seconds


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------
class DailyCapLedger:
    """Per-user, per-business-day XP accounting.

    Parameters
    ----------
    engine:
        Store engine; all I/O goes through :func:`run_db`.
    leveling:
        Base cap, tier ladder, business clock and retention window.
    cache:
        Optional cache for per-user daily progress.
    now:
        Clock returning an aware UTC ``datetime``.
    """

    def __init__(
        self,
        engine: Engine,
        leveling: LevelingConfig,
        *,
        cache: CacheLayer | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.engine = engine
        self.leveling = leveling
        self.cache = cache
        self._now = now

    # -- day & reset --------------------------------------------------------
    def current_date(self) -> date:
        return daily_cap.business_day(self._now(), self.leveling.clock)

    def get_current_day(self) -> str:
        """Business-day key (``YYYY-MM-DD``) for the current instant."""
        return self.current_date().isoformat()

    def next_reset(self) -> datetime:
        return daily_cap.next_reset_instant(self._now(), self.leveling.clock)

    def get_next_reset_timestamp(self) -> int:
        return int(self.next_reset().timestamp())

    def seconds_until_reset(self) -> float:
        return daily_cap.seconds_until_reset(self._now(), self.leveling.clock)

    # -- caps ---------------------------------------------------------------
    def resolve_tier(self, member: Any) -> TierConfig | None:
        return daily_cap.resolve_tier(member_role_ids(member), self.leveling.tiers)

    def get_user_daily_cap(self, member: Any) -> int:
        tier = self.resolve_tier(member)
        return tier.daily_cap if tier else self.leveling.base_daily_cap

    async def get_user_daily_xp(self, user_id: int, guild_id: int) -> int:
        record = await run_db(
            xp_store.get_daily_xp, self.engine, user_id, guild_id, self.current_date()
        )
        return record.total_xp if record else 0

    async def can_gain_xp(self, user_id: int, guild_id: int, member: Any) -> DailyCapStatus:
        """Whether the member is still under today's cap.

        Never raises: any failure is logged and reported as allowed.
        """
        cap = self.leveling.base_daily_cap
        try:
            cap = self.get_user_daily_cap(member)
            current = await self.get_user_daily_xp(user_id, guild_id)
            return build_cap_status(current, cap)
        except Exception:
            logger.exception(
                "Daily cap check failed; allowing XP",
                extra={"user_id": user_id, "guild_id": guild_id},
            )
            return DailyCapStatus(
                allowed=True, current_xp=0, daily_cap=cap, remaining=cap, percentage=0
            )

    async def add_xp(
        self,
        user_id: int,
        guild_id: int,
        amount: int,
        source: XPSource,
        member: Any = None,
    ) -> int:
        """Accrue *amount* against today's ledger row.  Returns the new day total."""
        tier = self.resolve_tier(member)
        total = await run_db(
            xp_store.add_daily_xp,
            self.engine,
            user_id,
            guild_id,
            self.current_date(),
            amount,
            source,
            daily_cap=tier.daily_cap if tier else self.leveling.base_daily_cap,
            tier_level=tier.rank if tier else 0,
            tier_role_id=tier.role_id if tier else None,
        )
        if self.cache is not None:
            await self.cache.invalidate_user_daily_progress(guild_id, user_id)
        return total

    # -- reporting ----------------------------------------------------------
    async def get_daily_stats(self, user_id: int, guild_id: int, member: Any) -> DailyStats:
        """Today's accrual for one member, with cap and tier context."""
        day = self.get_current_day()
        if self.cache is not None:
            cached = await self.cache.get_cached_daily_progress(guild_id, user_id, day)
            if cached:
                return DailyStats(**cached)

        record = await run_db(
            xp_store.get_daily_xp, self.engine, user_id, guild_id, self.current_date()
        )
        tier = self.resolve_tier(member)
        cap = tier.daily_cap if tier else self.leveling.base_daily_cap
        total = record.total_xp if record else 0
        status = build_cap_status(total, cap)

        stats = DailyStats(
            day=day,
            total_xp=total,
            message_xp=record.message_xp if record else 0,
            voice_xp=record.voice_xp if record else 0,
            reaction_xp=record.reaction_xp if record else 0,
            daily_cap=cap,
            remaining=status.remaining,
            percentage=status.percentage,
            is_at_cap=status.is_at_cap,
            tier_rank=tier.rank if tier else 0,
            tier_role_id=tier.role_id if tier else None,
            next_reset=self.get_next_reset_timestamp(),
        )
        if self.cache is not None:
            ttl = min(self.cache.config.stats_ttl, max(1.0, self.seconds_until_reset()))
            await self.cache.cache_daily_progress(guild_id, user_id, day, asdict(stats), ttl)
        return stats

    async def get_guild_daily_stats(self, guild_id: int) -> dict[str, Any]:
        """Guild-wide totals for the current business day."""
        summary = await run_db(
            xp_store.get_guild_daily_summary, self.engine, guild_id, self.current_date()
        )
        at_cap = await run_db(xp_store.get_users_at_cap, self.engine, guild_id, self.current_date())
        return {
            "day": self.get_current_day(),
            **asdict(summary),
            "base_daily_cap": self.leveling.base_daily_cap,
            "at_cap_user_ids": [r.user_id for r in at_cap],
            "next_reset": self.get_next_reset_timestamp(),
        }

    # -- maintenance --------------------------------------------------------
    async def cleanup_old_records(self) -> int:
        """Delete ledger rows older than the retention window."""
        cutoff = self.current_date() - timedelta(days=self.leveling.retention_days)
        return await run_db(xp_store.cleanup_old_daily_xp, self.engine, cutoff)

    async def reset_daily(self) -> dict[str, Any]:
        """Roll into the new business day.

        The new day key starts every member at zero on its own; this drops
        cached progress computed for the closed day and prunes history
        beyond the retention window.
        """
        cleared = 0
        if self.cache is not None:
            cleared = await self.cache.clear_all_daily_progress()
        pruned = await self.cleanup_old_records()
        summary = {"day": self.get_current_day(), "cache_cleared": cleared, "pruned": pruned}
        logger.info(
            "Daily XP reset: new day %s (pruned %d rows, cleared %d cache keys)",
            summary["day"],
            pruned,
            cleared,
        )
        return summary

    async def force_reset(self, guild_id: int | None = None) -> int:
        """Wipe the current day's accrual so every member can earn again."""
        deleted = await run_db(
            xp_store.delete_daily_xp_for_day, self.engine, self.current_date(), guild_id
        )
        if self.cache is not None:
            if guild_id is None:
                await self.cache.clear_all_daily_progress()
            else:
                await self.cache.clear_by_pattern(f"daily:{guild_id}:*")
        logger.warning(
            "Forced daily XP reset for %s: %d rows removed",
            f"guild {guild_id}" if guild_id else "all guilds",
            deleted,
        )
        return deleted


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------
class DailyResetScheduler:
    """One-shot timer chain that fires :meth:`DailyCapLedger.reset_daily`.

    Each cycle is its own task: sleep until the next reset instant, run the
    reset, arm the next task.  :meth:`stop` cancels whichever task is
    pending.
    """

    def __init__(self, ledger: DailyCapLedger, *, min_delay: float = 1.0) -> None:
        self._ledger = ledger
        self._min_delay = min_delay
        self._task: asyncio.Task | None = None
        self._stopped = True
        self.next_reset: datetime | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._arm()

    def stop(self) -> None:
        self._stopped = True
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def _arm(self) -> None:
        delay = max(self._min_delay, self._ledger.seconds_until_reset())
        self.next_reset = self._ledger.next_reset()
        self._task = asyncio.get_running_loop().create_task(
            self._fire_after(delay), name="daily-xp-reset"
        )
        logger.info("Next daily XP reset in %.0fs (%s)", delay, self.next_reset.isoformat())

    async def _fire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._ledger.reset_daily()
            self.runs += 1
        except Exception:
            logger.exception("Daily XP reset failed", extra={"task": "daily_reset"})
        if not self._stopped:
            self._arm()
