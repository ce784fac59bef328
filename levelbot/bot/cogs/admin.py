"""
levelbot.bot.cogs.admin — Admin Slash Commands
===============================================

Discord slash commands for server admins:
- /guild-daily — today's XP totals for the guild
- /force-reset — wipe today's daily XP so everyone can earn again
- /levelup-channel — route or disable level-up announcements
- /xp-log — route or disable the XP activity log
- /cache-stats — cache backend health and key counts

All commands require the Manage Server permission.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

if TYPE_CHECKING:
    from levelbot.bot.core import LevelBot

logger = logging.getLogger(__name__)


def is_admin():
    """Decorator that checks the invoker can manage the guild."""
    async def predicate(interaction: discord.Interaction) -> bool:
        perms = getattr(interaction.user, "guild_permissions", None)
        return bool(perms and perms.manage_guild)
    return app_commands.check(predicate)


class Admin(commands.Cog, name="Admin"):
    """Server administration commands for the leveling system."""

    def __init__(self, bot: LevelBot) -> None:
        self.bot = bot

    # -------------------------------------------------------------------
    # /guild-daily
    # -------------------------------------------------------------------
    @app_commands.command(name="guild-daily", description="Today's XP totals for this server.")
    @app_commands.guild_only()
    @is_admin()
    async def guild_daily(self, interaction: discord.Interaction) -> None:
        stats = await self.bot.ledger.get_guild_daily_stats(interaction.guild_id)

        embed = discord.Embed(
            title=f"\U0001f4ca Daily XP — {stats['day']}",
            color=discord.Color.blurple(),
        )
        embed.add_field(name="Active members", value=str(stats["active_users"]), inline=True)
        embed.add_field(name="Total XP", value=f"{stats['total_xp']:,}", inline=True)
        embed.add_field(name="At cap", value=str(stats["users_at_cap"]), inline=True)
        embed.add_field(name="Average", value=f"{stats['average_xp']:,.0f}", inline=True)
        embed.add_field(name="Highest", value=f"{stats['highest_xp']:,}", inline=True)
        embed.add_field(name="Base cap", value=f"{stats['base_daily_cap']:,}", inline=True)
        embed.add_field(
            name="By source",
            value=(
                f"Messages {stats['message_xp']:,} | "
                f"Voice {stats['voice_xp']:,} | "
                f"Reactions {stats['reaction_xp']:,}"
            ),
            inline=False,
        )
        capped = stats["at_cap_user_ids"]
        if capped:
            shown = " ".join(f"<@{uid}>" for uid in capped[:15])
            if len(capped) > 15:
                shown += f" … +{len(capped) - 15}"
            embed.add_field(name="Capped today", value=shown, inline=False)
        embed.add_field(name="Next reset", value=f"<t:{stats['next_reset']}:R>", inline=False)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # -------------------------------------------------------------------
    # /force-reset
    # -------------------------------------------------------------------
    @app_commands.command(
        name="force-reset",
        description="Clear today's daily XP so every member can earn again.",
    )
    @app_commands.guild_only()
    @is_admin()
    async def force_reset(self, interaction: discord.Interaction) -> None:
        deleted = await self.bot.ledger.force_reset(interaction.guild_id)
        logger.warning(
            "Force reset by %s in guild %s", interaction.user.id, interaction.guild_id
        )
        await interaction.response.send_message(
            f"✅ Daily XP reset: {deleted} member record(s) cleared.", ephemeral=True
        )

    # -------------------------------------------------------------------
    # /levelup-channel
    # -------------------------------------------------------------------
    @app_commands.command(
        name="levelup-channel",
        description="Set the level-up announcement channel, or turn announcements off.",
    )
    @app_commands.describe(
        channel="Channel for level-up messages (omit to keep the current one)",
        enabled="Whether level-ups are announced",
    )
    @app_commands.guild_only()
    @is_admin()
    async def levelup_channel(
        self,
        interaction: discord.Interaction,
        channel: discord.TextChannel | None = None,
        enabled: bool = True,
    ) -> None:
        changes: dict = {"levelup_enabled": enabled}
        if channel is not None:
            changes["levelup_channel_id"] = channel.id
        await self.bot.guild_settings.update(interaction.guild_id, **changes)

        where = channel.mention if channel else "the current channel"
        state = f"on in {where}" if enabled else "off"
        await interaction.response.send_message(
            f"✅ Level-up announcements are {state}.", ephemeral=True
        )

    # -------------------------------------------------------------------
    # /xp-log
    # -------------------------------------------------------------------
    @app_commands.command(name="xp-log", description="Set the XP activity log channel, or turn it off.")
    @app_commands.describe(
        channel="Channel for XP log entries (omit to keep the current one)",
        enabled="Whether XP awards are logged",
    )
    @app_commands.guild_only()
    @is_admin()
    async def xp_log(
        self,
        interaction: discord.Interaction,
        channel: discord.TextChannel | None = None,
        enabled: bool = True,
    ) -> None:
        changes: dict = {"xp_log_enabled": enabled}
        if channel is not None:
            changes["xp_log_channel_id"] = channel.id
        await self.bot.guild_settings.update(interaction.guild_id, **changes)

        where = channel.mention if channel else "the current channel"
        state = f"on in {where}" if enabled else "off"
        await interaction.response.send_message(f"✅ XP log is {state}.", ephemeral=True)

    # -------------------------------------------------------------------
    # /cache-stats
    # -------------------------------------------------------------------
    @app_commands.command(name="cache-stats", description="Cache backend health and key counts.")
    @is_admin()
    async def cache_stats(self, interaction: discord.Interaction) -> None:
        health = await self.bot.cache.health_check()
        stats = await self.bot.cache.get_cache_stats()

        embed = discord.Embed(
            title="\U0001f5c4️ Cache",
            color=discord.Color.green() if health["status"] == "ok" else discord.Color.orange(),
        )
        embed.add_field(name="Status", value=health["status"], inline=True)
        embed.add_field(name="Backend", value=stats["backend"], inline=True)
        latency = health["primary_latency_ms"]
        embed.add_field(
            name="Latency", value=f"{latency} ms" if latency is not None else "—", inline=True
        )
        embed.add_field(name="Keys", value=str(stats["total_keys"]), inline=True)
        embed.add_field(name="Fallback entries", value=str(stats["fallback_entries"]), inline=True)
        if stats["categories"]:
            embed.add_field(
                name="By category",
                value="\n".join(f"`{k}`: {v}" for k, v in sorted(stats["categories"].items())),
                inline=False,
            )
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # -------------------------------------------------------------------
    # Error handler for missing permission
    # -------------------------------------------------------------------
    async def cog_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        if isinstance(error, app_commands.CheckFailure):
            await interaction.response.send_message(
                "🔒 You need the Manage Server permission to use this command.",
                ephemeral=True,
            )
        else:
            raise error


async def setup(bot: LevelBot) -> None:
    await bot.add_cog(Admin(bot))
