"""
levelbot.bot.cogs.voice — Voice Presence Sessions & XP Sweep
=============================================================

Forwards ``on_voice_state_update`` to the :class:`VoiceTracker` and runs
its sweep on a ``tasks.loop``.  The loop interval comes from
``leveling.voice.sweep_interval_seconds`` (default five minutes).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands, tasks

if TYPE_CHECKING:
    from levelbot.bot.core import LevelBot

logger = logging.getLogger(__name__)


class Voice(commands.Cog, name="Voice"):
    """Tracks voice sessions and awards voice XP on each sweep."""

    def __init__(self, bot: LevelBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        """Start the sweep loop at the configured interval."""
        self.voice_sweep_loop.change_interval(
            seconds=self.bot.cfg.leveling.voice.sweep_interval_seconds
        )
        self.voice_sweep_loop.start()

    async def cog_unload(self) -> None:
        self.voice_sweep_loop.cancel()

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        """Open, move, update or close the member's session."""
        try:
            await self.bot.voice_tracker.handle_voice_state_update(member, before, after)
        except Exception:
            logger.exception(
                "Error processing voice state update for user %s",
                member.id,
                extra={"event_type": "voice_state", "user_id": member.id},
            )

    @tasks.loop(seconds=300)
    async def voice_sweep_loop(self) -> None:
        """Periodic sweep that converts voice presence into XP."""
        if not self.bot.is_ready():
            return
        try:
            summary = await self.bot.voice_tracker.sweep(self.bot.guilds)
            logger.debug("Voice sweep outcomes: %s", dict(summary.outcomes))
        except Exception:
            logger.exception("Voice sweep failed", extra={"task": "voice_sweep"})

    @voice_sweep_loop.before_loop
    async def before_voice_sweep(self) -> None:
        """Wait until the bot is ready before sweeping."""
        await self.bot.wait_until_ready()


async def setup(bot: LevelBot) -> None:
    await bot.add_cog(Voice(bot))
