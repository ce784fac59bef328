"""
levelbot.services.embeds — Discord embed builders
==================================================

All embed construction lives here so the collaborators only supply data.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

import discord

from levelbot.constants import COLOR_LEVEL_UP, COLOR_XP_LOG, SOURCE_EMOJI

if TYPE_CHECKING:
    from levelbot.services.activity_log import ActivityEntry


def _progress_bar(current: int, cap: int, width: int = 10) -> str:
    filled = 0 if cap <= 0 else min(width, round(current / cap * width))
    return "█" * filled + "░" * (width - filled)


def build_level_up_embed(
    user_id: int,
    avatar_url: str | None,
    old_level: int,
    new_level: int,
    total_xp: int,
    source: str,
    role_name: str | None = None,
) -> discord.Embed:
    """Level-up celebration with @mention."""
    embed = discord.Embed(
        title="⬆️ Level Up!",
        description=f"<@{user_id}> reached **Level {new_level}**!",
        color=discord.Color(COLOR_LEVEL_UP),
    )
    embed.add_field(name="Progress", value=f"{old_level} → {new_level}", inline=True)
    embed.add_field(name="Total XP", value=f"{total_xp:,}", inline=True)
    embed.add_field(
        name="Earned from",
        value=f"{SOURCE_EMOJI.get(source, '')} {source}".strip(),
        inline=True,
    )
    if role_name:
        embed.add_field(name="New role", value=role_name, inline=False)
    if avatar_url:
        embed.set_thumbnail(url=avatar_url)
    return embed


def build_xp_log_embed(entry: ActivityEntry) -> discord.Embed:
    """One-line XP award log with the member's daily cap progress."""
    emoji = SOURCE_EMOJI.get(entry.source, "")
    embed = discord.Embed(
        description=(
            f"{emoji} <@{entry.user_id}> earned **{entry.xp} XP** from {entry.source}"
        ),
        color=discord.Color(COLOR_XP_LOG),
    )
    embed.add_field(name="Total", value=f"{entry.total_xp:,} XP", inline=True)
    embed.add_field(name="Level", value=str(entry.level), inline=True)
    if entry.daily_cap:
        embed.add_field(
            name="Today",
            value=(
                f"{_progress_bar(entry.daily_total, entry.daily_cap)} "
                f"{entry.daily_total:,}/{entry.daily_cap:,}"
            ),
            inline=False,
        )
    return embed


def build_voice_batch_embed(channel_name: str, entries: Sequence[ActivityEntry]) -> discord.Embed:
    """Summary of every voice award in one channel since the last flush."""
    total = sum(e.xp for e in entries)
    lines = [
        f"<@{e.user_id}> +{e.xp} XP (lvl {e.level}"
        + (f", {e.daily_total:,}/{e.daily_cap:,} today" if e.daily_cap else "")
        + ")"
        for e in entries[:20]
    ]
    if len(entries) > 20:
        lines.append(f"… and {len(entries) - 20} more")
    embed = discord.Embed(
        title=f"{SOURCE_EMOJI['voice']} Voice XP · {channel_name}",
        description="\n".join(lines),
        color=discord.Color(COLOR_XP_LOG),
    )
    embed.set_footer(text=f"{len(entries)} awards · {total:,} XP")
    return embed
