"""
levelbot.bot.cogs.leveling — Level, Leaderboard & Daily Progress Commands
==========================================================================

Hybrid commands for members:
- /level — lifetime XP, level progress and rank
- /leaderboard — top members still in the guild
- /daily — today's XP against the member's daily cap
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from levelbot.constants import RANK_BADGES, SOURCE_EMOJI
from levelbot.services.leaderboard_service import get_validated_leaderboard

if TYPE_CHECKING:
    from levelbot.bot.core import LevelBot

LEADERBOARD_MAX = 25


def _bar(percentage: int, width: int = 12) -> str:
    filled = max(0, min(width, round(percentage / 100 * width)))
    return "█" * filled + "░" * (width - filled)


class Leveling(commands.Cog, name="Leveling"):
    """Member-facing XP commands."""

    def __init__(self, bot: LevelBot) -> None:
        self.bot = bot

    # -------------------------------------------------------------------
    # /level
    # -------------------------------------------------------------------
    @commands.hybrid_command(  # type: ignore[arg-type]
        name="level",
        description="View your (or another member's) level and XP.",
    )
    @commands.guild_only()
    @app_commands.describe(member="The member to look up (defaults to you)")
    async def level(self, ctx: commands.Context, member: discord.Member | None = None) -> None:
        target = member or ctx.author
        stats = await self.bot.coordinator.get_user_stats(target.id, ctx.guild.id)

        if stats is None:
            await ctx.send(
                f"\U0001f50d **{target.display_name}** hasn't earned any XP yet.",
                ephemeral=True,
            )
            return

        progress = stats["progress"]
        embed = discord.Embed(
            title=f"{target.display_name} — Level {stats['level']}",
            color=discord.Color.blurple(),
        )
        embed.set_thumbnail(url=target.display_avatar.url)
        embed.add_field(name="Total XP", value=f"{stats['total_xp']:,}", inline=True)
        embed.add_field(name="Rank", value=f"#{stats['rank']}", inline=True)
        embed.add_field(
            name="Next level",
            value=(
                f"{_bar(progress['percentage'])} {progress['percentage']}%\n"
                f"{progress['progress_xp']:,} / {progress['span_xp']:,} XP"
            ),
            inline=False,
        )
        embed.add_field(
            name="Activity",
            value=(
                f"{SOURCE_EMOJI['message']} {stats['messages']} msgs | "
                f"{SOURCE_EMOJI['reaction']} {stats['reactions']} rxns | "
                f"{SOURCE_EMOJI['voice']} {stats['voice_time']}m voice"
            ),
            inline=False,
        )
        await ctx.send(embed=embed)

    # -------------------------------------------------------------------
    # /leaderboard
    # -------------------------------------------------------------------
    @commands.hybrid_command(  # type: ignore[arg-type]
        name="leaderboard",
        description="View the top members by XP.",
    )
    @commands.guild_only()
    @app_commands.describe(limit="How many members to show (max 25)")
    async def leaderboard(self, ctx: commands.Context, limit: int = 10) -> None:
        limit = max(1, min(limit, LEADERBOARD_MAX))
        await ctx.defer()
        page = await get_validated_leaderboard(
            self.bot.engine, self.bot.cache, ctx.guild, limit=LEADERBOARD_MAX
        )
        rows = page.users[:limit]

        if not rows:
            await ctx.send(
                "No data yet! Start chatting to appear on the leaderboard.",
                ephemeral=True,
            )
            return

        lines = []
        for r in rows:
            i = r["rank"]
            medal = RANK_BADGES[i - 1] if 0 < i <= len(RANK_BADGES) else f"**{i}.**"
            lines.append(
                f"{medal} **{r['display_name']}** — {r['total_xp']:,} XP (Lv. {r['level']})"
            )

        embed = discord.Embed(
            title=f"\U0001f3c6 Leaderboard — Top {len(rows)}",
            description="\n".join(lines),
            color=discord.Color.gold(),
        )
        if page.unresolved:
            embed.set_footer(text=f"{len(page.unresolved)} member(s) could not be checked right now")
        await ctx.send(embed=embed)

    # -------------------------------------------------------------------
    # /daily
    # -------------------------------------------------------------------
    @commands.hybrid_command(  # type: ignore[arg-type]
        name="daily",
        description="See how much of today's XP cap you have used.",
    )
    @commands.guild_only()
    @app_commands.describe(member="The member to look up (defaults to you)")
    async def daily(self, ctx: commands.Context, member: discord.Member | None = None) -> None:
        target = member or ctx.author
        stats = await self.bot.ledger.get_daily_stats(target.id, ctx.guild.id, target)

        embed = discord.Embed(
            title=f"{target.display_name} — Daily XP",
            description=(
                f"{_bar(stats.percentage)} {stats.percentage}%\n"
                f"**{stats.total_xp:,}** / {stats.daily_cap:,} XP"
            ),
            color=discord.Color.red() if stats.is_at_cap else discord.Color.green(),
        )
        embed.add_field(name="Messages", value=f"{stats.message_xp:,}", inline=True)
        embed.add_field(name="Voice", value=f"{stats.voice_xp:,}", inline=True)
        embed.add_field(name="Reactions", value=f"{stats.reaction_xp:,}", inline=True)
        if stats.tier_role_id:
            embed.add_field(
                name="Tier",
                value=f"<@&{stats.tier_role_id}> (rank {stats.tier_rank})",
                inline=True,
            )
        embed.add_field(name="Resets", value=f"<t:{stats.next_reset}:R>", inline=True)
        await ctx.send(embed=embed, ephemeral=True)


async def setup(bot: LevelBot) -> None:
    await bot.add_cog(Leveling(bot))
