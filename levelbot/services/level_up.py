"""
levelbot.services.level_up — Level-Up Collaborator
===================================================

Called by the award coordinator when a member's level increases:

1. Sync level roles: grant the highest configured role the member now
   qualifies for and strip lower level roles.
2. Post a celebration embed to the guild's level-up channel, unless the
   guild has level-up messages disabled.

Discord failures (missing permissions, deleted channel) are logged and
swallowed; a level-up is never rolled back because its announcement failed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import discord
from discord.abc import Messageable

from levelbot.services.embeds import build_level_up_embed
from levelbot.services.guild_settings import GuildSettingsResolver

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


def target_level_role(level_roles: dict[int, int], level: int) -> int | None:
    """Role id for the highest threshold at or below *level*."""
    eligible = [threshold for threshold in level_roles if threshold <= level]
    if not eligible:
        return None
    return level_roles[max(eligible)]


class LevelUpAnnouncer:
    """Grants level roles and announces level-ups.

    Parameters
    ----------
    settings:
        Resolves each guild's level-up channel and toggle.
    get_channel:
        Channel lookup, normally ``bot.get_channel``.
    level_roles:
        ``{level_threshold: role_id}`` from config.
    """

    def __init__(
        self,
        settings: GuildSettingsResolver,
        get_channel: Callable[[int], Any],
        level_roles: dict[int, int] | None = None,
    ) -> None:
        self.settings = settings
        self.get_channel = get_channel
        self.level_roles = dict(level_roles or {})

    async def handle_level_up(
        self,
        member: Any,
        guild_id: int,
        old_level: int,
        new_level: int,
        total_xp: int,
        source: str,
    ) -> None:
        user_id = getattr(member, "id", None)
        logger.info(
            "Level up: user %s in guild %s %d → %d (%s)",
            user_id,
            guild_id,
            old_level,
            new_level,
            source,
        )

        role_name = await self.sync_level_roles(member, new_level)

        settings = await self.settings.get(guild_id)
        if not settings.levelup_enabled or not settings.levelup_channel_id:
            return

        channel = self.get_channel(settings.levelup_channel_id)
        if channel is None or not isinstance(channel, Messageable):
            logger.warning(
                "Level-up channel %s not found in guild %s",
                settings.levelup_channel_id,
                guild_id,
            )
            return

        avatar = getattr(member, "display_avatar", None)
        embed = build_level_up_embed(
            user_id,
            avatar.url if avatar is not None else None,
            old_level,
            new_level,
            total_xp,
            str(source),
            role_name,
        )
        try:
            await channel.send(content=f"<@{user_id}>", embed=embed)
        except discord.HTTPException:
            logger.exception(
                "Failed to send level-up embed to channel %d", settings.levelup_channel_id
            )

    async def sync_level_roles(self, member: Any, level: int) -> str | None:
        """Give *member* the level role for *level*.  Returns the granted role's name."""
        if not self.level_roles or member is None or not hasattr(member, "guild"):
            return None

        target_id = target_level_role(self.level_roles, level)
        if target_id is None:
            return None

        held = {role.id for role in member.roles}
        if target_id in held:
            return None

        target = member.guild.get_role(target_id)
        if target is None:
            logger.warning("Level role %s not found in guild %s", target_id, member.guild.id)
            return None

        stale = [
            role
            for role in member.roles
            if role.id in self.level_roles.values() and role.id != target_id
        ]
        try:
            if stale:
                await member.remove_roles(*stale, reason="Level role upgrade")
            await member.add_roles(target, reason=f"Reached level {level}")
        except discord.HTTPException:
            logger.exception(
                "Could not update level roles for %s", member.id, extra={"level": level}
            )
            return None
        return target.name
