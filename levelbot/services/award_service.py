"""
levelbot.services.award_service — XP Award Coordinator
=======================================================

Turns a message, a reaction or a voice tick into XP.  Each award walks the
same pipeline:

    1. cooldown check       (per guild, user and source)
    2. daily cap check      (fails open)
    3. roll                 (uniform integer in the source's range)
    4. multipliers          (tier × global, rounded)
    5. record               (daily ledger + lifetime total)
    6. level recompute      (forward only; level-up collaborator on increase)
    7. cooldown update
    8. activity log         (fire and forget)

The public ``award_from_*`` methods never raise.  An unexpected error
anywhere in steps 1–7 is logged with the award's context and the event is
dropped.
"""

from __future__ import annotations

import logging
import math
import random
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine

from levelbot.config import LevelingConfig, XPRange
from levelbot.constants import level_for_xp, level_progress
from levelbot.database.engine import run_db
from levelbot.database.models import XPSource
from levelbot.engine.cache import CacheLayer
from levelbot.engine.cooldown import CooldownTracker
from levelbot.services import xp_store
from levelbot.services.activity_log import ActivityEntry
from levelbot.services.daily_cap_service import DailyCapLedger
from levelbot.services.xp_store import VoiceSessionRecord, as_utc

if TYPE_CHECKING:
    from levelbot.services.activity_log import XPActivityLogger
    from levelbot.services.level_up import LevelUpAnnouncer

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class AwardResult:
    """Outcome of one award attempt.

    ``reason`` is ``"awarded"`` on success, otherwise why nothing happened:
    ``"cooldown"``, ``"daily_cap"``, ``"zero"`` or ``"error"``.
    """

    awarded: bool
    source: str
    reason: str = "awarded"
    xp: int = 0
    total_xp: int = 0
    old_level: int = 0
    new_level: int = 0
    daily_total: int = 0

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.old_level


def roll_xp(rng: random.Random, xp_range: XPRange) -> int:
    """Uniform integer in ``[minimum, maximum]``."""
    return rng.randint(xp_range.minimum, xp_range.maximum)


def apply_multipliers(xp: float, *multipliers: float) -> int:
    """Scale *xp* and round half away from zero."""
    value = xp
    for m in multipliers:
        value *= m
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


class XPAwardCoordinator:
    """Single writer of XP awards.

    Parameters
    ----------
    engine:
        Store engine.
    leveling:
        XP ranges, cooldowns, global multiplier and the level formula.
    ledger:
        Daily cap ledger consulted before and updated after each award.
    cooldowns:
        Process-local cooldown map.  A fresh tracker is created if omitted.
    cache:
        Optional cache; user stats and leaderboards are invalidated on award.
    level_up:
        Collaborator invoked when a member's level increases.
    activity_log:
        Collaborator receiving one entry per successful award.
    rng:
        Random source for rolls.
    now:
        Clock returning an aware UTC ``datetime``.
    """

    def __init__(
        self,
        engine: Engine,
        leveling: LevelingConfig,
        ledger: DailyCapLedger,
        *,
        cooldowns: CooldownTracker | None = None,
        cache: CacheLayer | None = None,
        level_up: LevelUpAnnouncer | None = None,
        activity_log: XPActivityLogger | None = None,
        rng: random.Random | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.engine = engine
        self.leveling = leveling
        self.ledger = ledger
        self.cooldowns = cooldowns or CooldownTracker()
        self.cache = cache
        self.level_up = level_up
        self.activity_log = activity_log
        self.rng = rng or random.Random()
        self._now = now

    # -- configuration lookups ---------------------------------------------
    def cooldown_for(self, source: XPSource) -> int:
        return {
            XPSource.MESSAGE: self.leveling.message_cooldown,
            XPSource.REACTION: self.leveling.reaction_cooldown,
            XPSource.VOICE: self.leveling.voice_cooldown,
        }[source]

    def range_for(self, source: XPSource) -> XPRange:
        return {
            XPSource.MESSAGE: self.leveling.message_xp,
            XPSource.REACTION: self.leveling.reaction_xp,
            XPSource.VOICE: self.leveling.voice_xp,
        }[source]

    def tier_multiplier(self, member: Any) -> float:
        """Tiers raise the daily cap only; they never scale an award."""
        return 1.0

    # -- public entry points ------------------------------------------------
    async def award_from_message(self, user_id: int, guild_id: int, member: Any = None) -> AwardResult:
        return await self._award(user_id, guild_id, member, XPSource.MESSAGE)

    async def award_from_reaction(self, user_id: int, guild_id: int, member: Any = None) -> AwardResult:
        return await self._award(user_id, guild_id, member, XPSource.REACTION)

    async def award_from_voice_tick(
        self,
        session: VoiceSessionRecord,
        guild_id: int,
        member: Any,
        base_xp: int,
        *,
        channel_name: str | None = None,
    ) -> AwardResult:
        """Award *base_xp* (already rolled and AFK-adjusted) for one voice tick.

        The cooldown is measured from the session's ``last_xp_time``.
        """
        return await self._award(
            session.user_id,
            guild_id,
            member,
            XPSource.VOICE,
            base_xp=base_xp,
            session=session,
            channel_name=channel_name,
        )

    # -- pipeline -----------------------------------------------------------
    def _on_cooldown(self, user_id: int, guild_id: int, source: XPSource, session: VoiceSessionRecord | None) -> bool:
        window = self.cooldown_for(source)
        if session is not None:
            elapsed = (self._now() - as_utc(session.last_xp_time)).total_seconds()
            return elapsed < window
        return self.cooldowns.is_on_cooldown(guild_id, user_id, source, window)

    async def _award(
        self,
        user_id: int,
        guild_id: int,
        member: Any,
        source: XPSource,
        *,
        base_xp: int | None = None,
        session: VoiceSessionRecord | None = None,
        channel_name: str | None = None,
    ) -> AwardResult:
        try:
            if self._on_cooldown(user_id, guild_id, source, session):
                return AwardResult(False, source, "cooldown")

            status = await self.ledger.can_gain_xp(user_id, guild_id, member)
            if not status.allowed:
                logger.debug("User %s in guild %s is at the daily cap", user_id, guild_id)
                return AwardResult(False, source, "daily_cap", daily_total=status.current_xp)

            rolled = base_xp if base_xp is not None else roll_xp(self.rng, self.range_for(source))
            xp = apply_multipliers(
                rolled, self.tier_multiplier(member), self.leveling.global_multiplier
            )
            if xp <= 0:
                return AwardResult(False, source, "zero")

            before = await run_db(xp_store.get_user_xp, self.engine, user_id, guild_id)
            old_level = before.level if before else 0

            daily_total = await self.ledger.add_xp(user_id, guild_id, xp, source, member)
            record = await run_db(
                xp_store.update_user_xp,
                self.engine,
                user_id,
                guild_id,
                xp,
                source,
                voice_minutes=self.leveling.voice_cooldown // 60,
            )

            new_level = max(old_level, level_for_xp(record.total_xp, self.leveling.formula))
            if new_level > old_level:
                await run_db(xp_store.update_user_level, self.engine, user_id, guild_id, new_level)
                await self._notify_level_up(member, guild_id, old_level, new_level, record.total_xp, source)

            self.cooldowns.mark(guild_id, user_id, source)
            await self._invalidate(user_id, guild_id, leveled_up=new_level > old_level)
        except Exception:
            logger.exception(
                "XP award failed",
                extra={"user_id": user_id, "guild_id": guild_id, "source": str(source)},
            )
            return AwardResult(False, source, "error")

        result = AwardResult(
            awarded=True,
            source=source,
            xp=xp,
            total_xp=record.total_xp,
            old_level=old_level,
            new_level=new_level,
            daily_total=daily_total,
        )
        self._log_activity(
            result,
            user_id,
            guild_id,
            daily_cap=status.daily_cap,
            channel_id=session.channel_id if session else None,
            channel_name=channel_name,
        )
        return result

    async def _notify_level_up(
        self, member: Any, guild_id: int, old_level: int, new_level: int, total_xp: int, source: XPSource
    ) -> None:
        if self.level_up is None:
            return
        try:
            await self.level_up.handle_level_up(member, guild_id, old_level, new_level, total_xp, str(source))
        except Exception:
            logger.exception(
                "Level-up handler failed",
                extra={"guild_id": guild_id, "new_level": new_level},
            )

    async def _invalidate(self, user_id: int, guild_id: int, *, leveled_up: bool) -> None:
        if self.cache is None:
            return
        await self.cache.invalidate_user_stats(guild_id, user_id)
        if leveled_up:
            await self.cache.invalidate_guild_leaderboards(guild_id)

    def _log_activity(self, result: AwardResult, user_id: int, guild_id: int, **extra: Any) -> None:
        if self.activity_log is None:
            return
        try:
            self.activity_log.record(
                ActivityEntry(
                    user_id=user_id,
                    guild_id=guild_id,
                    source=str(result.source),
                    xp=result.xp,
                    total_xp=result.total_xp,
                    level=result.new_level,
                    old_level=result.old_level,
                    daily_total=result.daily_total,
                    **extra,
                )
            )
        except Exception:
            logger.exception("Activity log failed", extra={"user_id": user_id, "guild_id": guild_id})

    # -- queries ------------------------------------------------------------
    async def get_user_stats(self, user_id: int, guild_id: int) -> dict[str, Any] | None:
        """Lifetime XP, level progress and rank for one member."""
        if self.cache is not None:
            cached = await self.cache.get_cached_user_stats(guild_id, user_id)
            if cached:
                return cached

        record = await run_db(xp_store.get_user_xp, self.engine, user_id, guild_id)
        if record is None:
            return None
        rank = await run_db(xp_store.get_user_rank, self.engine, user_id, guild_id)
        progress = level_progress(record.total_xp, self.leveling.formula)
        stats = {
            **asdict(record),
            "level": max(record.level, progress.level),
            "rank": rank,
            "progress": asdict(progress),
        }
        if self.cache is not None:
            await self.cache.cache_user_stats(guild_id, user_id, stats)
        return stats

    async def get_leaderboard(self, guild_id: int, limit: int = 10) -> list[dict[str, Any]]:
        """Top members by lifetime XP, rank-numbered."""
        if self.cache is not None:
            cached = await self.cache.get_cached_leaderboard(guild_id, "xp", limit)
            if cached is not None:
                return cached

        records = await run_db(xp_store.get_leaderboard, self.engine, guild_id, limit)
        rows = [{"rank": i, **asdict(r)} for i, r in enumerate(records, start=1)]
        if self.cache is not None:
            await self.cache.cache_leaderboard(guild_id, "xp", limit, rows)
        return rows
