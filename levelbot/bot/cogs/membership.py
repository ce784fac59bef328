"""
levelbot.bot.cogs.membership — Member Leave & Role Changes
===========================================================

Keeps caches honest when guild membership changes.  Requires the
GUILD_MEMBERS privileged intent.

- leave       → tombstone the guild's validated leaderboard and drop
                the member's voice session
- role change → drop cached daily progress (the tier cap may differ)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

if TYPE_CHECKING:
    from levelbot.bot.core import LevelBot

logger = logging.getLogger(__name__)


class Membership(commands.Cog, name="Membership"):
    """Invalidates cached state when members leave or change roles."""

    def __init__(self, bot: LevelBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_member_remove(self, member: discord.Member) -> None:
        try:
            if member.bot:
                return
            await self.bot.cache.invalidate_guild_cache(member.guild.id)
            await self.bot.voice_tracker.end_session(member.id, member.guild.id)
            logger.info("Member left: %s (ID: %d)", member.display_name, member.id)
        except Exception:
            logger.exception(
                "Error processing member_leave for %s", member.id,
                extra={"event_type": "member_leave", "user_id": member.id},
            )

    @commands.Cog.listener()
    async def on_member_update(self, before: discord.Member, after: discord.Member) -> None:
        if after.bot:
            return
        if {r.id for r in before.roles} == {r.id for r in after.roles}:
            return
        try:
            await self.bot.cache.invalidate_user_daily_progress(after.guild.id, after.id)
        except Exception:
            logger.exception(
                "Error processing role change for %s", after.id,
                extra={"event_type": "member_update", "user_id": after.id},
            )


async def setup(bot: LevelBot) -> None:
    await bot.add_cog(Membership(bot))
