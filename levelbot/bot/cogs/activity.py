"""
levelbot.bot.cogs.activity — Message & Reaction XP
===================================================

Gateway listeners that hand text activity to the award coordinator:

- ``on_message``          → message XP for the author
- ``on_raw_reaction_add`` → reaction XP for the member who reacted

Bots and DMs are ignored.  Raw reaction events are used so reactions on
uncached messages still count.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

if TYPE_CHECKING:
    from levelbot.bot.core import LevelBot

logger = logging.getLogger(__name__)


class Activity(commands.Cog, name="Activity"):
    """Awards XP for messages and reactions."""

    def __init__(self, bot: LevelBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is None:
            return
        try:
            result = await self.bot.coordinator.award_from_message(
                message.author.id, message.guild.id, message.author
            )
            logger.debug(
                "Message XP for %s: %s (+%d)", message.author.id, result.reason, result.xp
            )
        except Exception:
            logger.exception(
                "Error processing message %s from user %s",
                message.id,
                message.author.id,
                extra={"event_type": "message", "user_id": message.author.id},
            )

    @commands.Cog.listener()
    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        """Fire when any reaction is added, even on uncached messages."""
        if payload.guild_id is None:
            return
        if payload.member is None or payload.member.bot:
            return
        try:
            result = await self.bot.coordinator.award_from_reaction(
                payload.user_id, payload.guild_id, payload.member
            )
            logger.debug(
                "Reaction XP for %s: %s (+%d)", payload.user_id, result.reason, result.xp
            )
        except Exception:
            logger.exception(
                "Error processing reaction on message %s from user %s",
                payload.message_id,
                payload.user_id,
                extra={"event_type": "reaction", "user_id": payload.user_id},
            )


async def setup(bot: LevelBot) -> None:
    await bot.add_cog(Activity(bot))
