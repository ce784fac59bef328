"""
levelbot.services.voice_service — Voice Presence Tracker
=========================================================

Keeps one ``voice_sessions`` row per member in voice and periodically
converts presence into XP.

State changes (from ``on_voice_state_update``):

* join   — open a session; the first award comes one cooldown later.
* leave  — delete the session.
* move   — replace the session with the new channel, carrying the new
  mute/deafen flags.
* mute/deafen toggle — update flags in place; no XP side effect.

Sweep, per stored session of each guild:

1. channel gone → delete session.
2. member gone, a bot, or not in that channel → delete session.
3. last award younger than the voice cooldown → skip.
4. fewer than ``min_members`` non-bot members present → skip; session and
   cooldown are left alone.
5. roll voice XP; muted/deafened members earn ``afk_penalty`` of it unless
   exempt (exempt users and roles earn ``exempt_multiplier``).
6. award through the coordinator; on success stamp ``last_xp_time``.

A failure on one session is logged and the sweep moves on.
"""

from __future__ import annotations

import enum
import logging
import random
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Engine

from levelbot.config import LevelingConfig
from levelbot.database.engine import run_db
from levelbot.services import xp_store
from levelbot.services.award_service import XPAwardCoordinator, apply_multipliers, roll_xp
from levelbot.services.daily_cap_service import member_role_ids
from levelbot.services.xp_store import VoiceSessionRecord, as_utc

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class VoiceTransition(enum.StrEnum):
    JOIN = "join"
    LEAVE = "leave"
    MOVE = "move"
    STATE_CHANGE = "state_change"
    NONE = "none"


def voice_flags(state: Any) -> tuple[bool, bool]:
    """``(muted, deafened)`` for a ``discord.VoiceState``, server or self."""
    if state is None:
        return False, False
    muted = bool(getattr(state, "mute", False) or getattr(state, "self_mute", False))
    deafened = bool(getattr(state, "deaf", False) or getattr(state, "self_deaf", False))
    return muted, deafened


def _channel_id(state: Any) -> int | None:
    channel = getattr(state, "channel", None)
    return channel.id if channel is not None else None


def classify_transition(before: Any, after: Any) -> VoiceTransition:
    """Name the change between two voice states."""
    old_channel, new_channel = _channel_id(before), _channel_id(after)
    if old_channel is None and new_channel is not None:
        return VoiceTransition.JOIN
    if old_channel is not None and new_channel is None:
        return VoiceTransition.LEAVE
    if old_channel is None:
        return VoiceTransition.NONE
    if old_channel != new_channel:
        return VoiceTransition.MOVE
    if voice_flags(before) != voice_flags(after):
        return VoiceTransition.STATE_CHANGE
    return VoiceTransition.NONE


@dataclass
class SweepSummary:
    sessions: int = 0
    awarded: int = 0
    xp_awarded: int = 0
    outcomes: Counter = field(default_factory=Counter)


class VoiceTracker:
    """Voice session bookkeeping and the periodic XP sweep."""

    def __init__(
        self,
        engine: Engine,
        leveling: LevelingConfig,
        coordinator: XPAwardCoordinator,
        *,
        rng: random.Random | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.engine = engine
        self.leveling = leveling
        self.voice = leveling.voice
        self.coordinator = coordinator
        self.rng = rng or random.Random()
        self._now = now

    # -- state changes ------------------------------------------------------
    async def handle_voice_state_update(self, member: Any, before: Any, after: Any) -> VoiceTransition:
        if getattr(member, "bot", False):
            return VoiceTransition.NONE

        guild_id = member.guild.id
        transition = classify_transition(before, after)
        muted, deafened = voice_flags(after)

        if transition in (VoiceTransition.JOIN, VoiceTransition.MOVE):
            await run_db(
                xp_store.set_voice_session,
                self.engine,
                member.id,
                guild_id,
                after.channel.id,
                self._now(),
                is_muted=muted,
                is_deafened=deafened,
            )
        elif transition is VoiceTransition.LEAVE:
            await run_db(xp_store.delete_voice_session, self.engine, member.id, guild_id)
        elif transition is VoiceTransition.STATE_CHANGE:
            await run_db(
                xp_store.update_voice_flags,
                self.engine,
                member.id,
                guild_id,
                is_muted=muted,
                is_deafened=deafened,
            )

        if transition is not VoiceTransition.NONE:
            logger.debug("Voice %s: user %s in guild %s", transition, member.id, guild_id)
        return transition

    # -- XP calculation -----------------------------------------------------
    def is_exempt(self, user_id: int, member: Any) -> bool:
        if user_id in self.voice.exempt_user_ids:
            return True
        return bool(member_role_ids(member) & self.voice.exempt_role_ids)

    def adjust_for_afk(self, xp: int, session: VoiceSessionRecord, member: Any) -> int:
        """Scale *xp* for a muted or deafened member."""
        if not self.voice.anti_afk or not (session.is_muted or session.is_deafened):
            return xp
        if self.is_exempt(session.user_id, member):
            return apply_multipliers(xp, self.voice.exempt_multiplier)
        return apply_multipliers(xp, self.voice.afk_penalty)

    # -- sweep --------------------------------------------------------------
    async def sweep(self, guilds: Iterable[Any]) -> SweepSummary:
        """Run one pass over every stored session of *guilds*."""
        summary = SweepSummary()
        for guild in guilds:
            try:
                sessions = await run_db(xp_store.get_voice_sessions, self.engine, guild.id)
            except Exception:
                logger.exception("Could not load voice sessions", extra={"guild_id": guild.id})
                continue

            for session in sessions:
                summary.sessions += 1
                try:
                    outcome, xp = await self.process_session(session, guild)
                except Exception:
                    logger.exception(
                        "Voice XP failed for user %s",
                        session.user_id,
                        extra={"guild_id": guild.id, "channel_id": session.channel_id},
                    )
                    outcome, xp = "error", 0
                summary.outcomes[outcome] += 1
                if outcome == "awarded":
                    summary.awarded += 1
                    summary.xp_awarded += xp

        if summary.awarded:
            logger.info(
                "Voice sweep: %d/%d sessions awarded %d XP",
                summary.awarded,
                summary.sessions,
                summary.xp_awarded,
            )
        return summary

    async def process_session(self, session: VoiceSessionRecord, guild: Any) -> tuple[str, int]:
        """Evaluate one session.  Returns ``(outcome, xp_awarded)``."""
        channel = guild.get_channel(session.channel_id)
        if channel is None:
            await run_db(xp_store.delete_voice_session, self.engine, session.user_id, guild.id)
            return "channel_missing", 0

        member = guild.get_member(session.user_id)
        if member is None or member.bot or _channel_id(member.voice) != session.channel_id:
            await run_db(xp_store.delete_voice_session, self.engine, session.user_id, guild.id)
            return "not_in_channel", 0

        now = self._now()
        if now - as_utc(session.last_xp_time) < timedelta(seconds=self.leveling.voice_cooldown):
            return "cooldown", 0

        humans = sum(1 for m in channel.members if not m.bot)
        if humans < self.voice.min_members:
            return "insufficient_members", 0

        xp = self.adjust_for_afk(roll_xp(self.rng, self.leveling.voice_xp), session, member)
        result = await self.coordinator.award_from_voice_tick(
            session, guild.id, member, xp, channel_name=getattr(channel, "name", None)
        )
        if not result.awarded:
            return result.reason, 0

        await run_db(xp_store.touch_voice_session, self.engine, session.user_id, guild.id, now)
        return "awarded", result.xp

    # -- startup reconciliation ---------------------------------------------
    async def sync_existing_sessions(self, guilds: Iterable[Any]) -> int:
        """Open sessions for members already in voice when the bot starts.

        ``last_xp_time`` is back-dated by one cooldown so they are eligible
        on the first sweep.
        """
        now = self._now()
        eligible_at = now - timedelta(seconds=self.leveling.voice_cooldown)
        synced = 0
        for guild in guilds:
            for channel in guild.voice_channels:
                for member in channel.members:
                    if member.bot:
                        continue
                    muted, deafened = voice_flags(member.voice)
                    await run_db(
                        xp_store.set_voice_session,
                        self.engine,
                        member.id,
                        guild.id,
                        channel.id,
                        now,
                        is_muted=muted,
                        is_deafened=deafened,
                        last_xp_time=eligible_at,
                    )
                    synced += 1
        logger.info("Synced %d existing voice sessions", synced)
        return synced

    async def cleanup_orphaned_sessions(self, guilds: Iterable[Any]) -> int:
        """Delete sessions whose guild, member or channel presence is gone."""
        by_id = {guild.id: guild for guild in guilds}
        removed = 0
        for session in await run_db(xp_store.get_voice_sessions, self.engine):
            guild = by_id.get(session.guild_id)
            member = guild.get_member(session.user_id) if guild is not None else None
            if member is not None and not member.bot and _channel_id(member.voice) == session.channel_id:
                continue
            await run_db(xp_store.delete_voice_session, self.engine, session.user_id, session.guild_id)
            removed += 1
        if removed:
            logger.info("Removed %d orphaned voice sessions", removed)
        return removed

    async def end_session(self, user_id: int, guild_id: int) -> bool:
        """Drop a member's session outside a voice event (e.g. they left the guild)."""
        return await run_db(xp_store.delete_voice_session, self.engine, user_id, guild_id)

