"""
levelbot.services.activity_log — XP Activity Feed
==================================================

Best-effort log of every award.  :meth:`XPActivityLogger.record` is
synchronous and never awaits Discord, so the award path is never slowed or
failed by logging:

* every entry is written to the Python log;
* message and reaction entries are posted to the guild's XP log channel in a
  background task;
* voice entries are batched per voice channel and flushed as one summary
  embed every ``flush_interval`` seconds by a drain task.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import discord
from discord.abc import Messageable

from levelbot.services.embeds import build_voice_batch_embed, build_xp_log_embed
from levelbot.services.guild_settings import GuildSettingsResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ActivityEntry:
    user_id: int
    guild_id: int
    source: str
    xp: int
    total_xp: int
    level: int
    old_level: int
    daily_total: int = 0
    daily_cap: int = 0
    channel_id: int | None = None
    channel_name: str | None = None


class XPActivityLogger:
    def __init__(
        self,
        settings: GuildSettingsResolver,
        get_channel: Callable[[int], Any],
        *,
        flush_interval: float = 30.0,
    ) -> None:
        self.settings = settings
        self.get_channel = get_channel
        self.flush_interval = flush_interval
        # (guild_id, voice_channel_id) → entries since last flush
        self._voice_batches: dict[tuple[int, int | None], list[ActivityEntry]] = defaultdict(list)
        self._inflight: set[asyncio.Task] = set()
        self._drain_task: asyncio.Task | None = None

    def record(self, entry: ActivityEntry) -> None:
        """Log *entry* and queue it for the XP log channel."""
        logger.info(
            "XP +%d (%s) user=%s guild=%s total=%d level=%d",
            entry.xp,
            entry.source,
            entry.user_id,
            entry.guild_id,
            entry.total_xp,
            entry.level,
            extra={"user_id": entry.user_id, "guild_id": entry.guild_id, "source": entry.source},
        )
        if entry.source == "voice":
            self._voice_batches[(entry.guild_id, entry.channel_id)].append(entry)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._post(entry.guild_id, build_xp_log_embed(entry)))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    @property
    def pending_voice_entries(self) -> int:
        return sum(len(batch) for batch in self._voice_batches.values())

    async def _resolve_channel(self, guild_id: int) -> Messageable | None:
        settings = await self.settings.get(guild_id)
        if not settings.xp_log_enabled or not settings.xp_log_channel_id:
            return None
        channel = self.get_channel(settings.xp_log_channel_id)
        if channel is None or not isinstance(channel, Messageable):
            return None
        return channel

    async def _post(self, guild_id: int, embed: discord.Embed) -> None:
        try:
            channel = await self._resolve_channel(guild_id)
            if channel is not None:
                await channel.send(embed=embed)
        except Exception:
            logger.exception("Failed to post XP log", extra={"guild_id": guild_id})

    async def flush_voice(self) -> int:
        """Post one summary embed per batched voice channel.  Returns entries flushed."""
        batches, self._voice_batches = self._voice_batches, defaultdict(list)
        flushed = 0
        for (guild_id, _channel_id), entries in batches.items():
            if not entries:
                continue
            name = entries[0].channel_name or "voice"
            await self._post(guild_id, build_voice_batch_embed(name, entries))
            flushed += len(entries)
        return flushed

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start the background voice-batch drain task."""
        if self._drain_task is not None:
            return

        async def _drain_loop() -> None:
            while True:
                await asyncio.sleep(self.flush_interval)
                try:
                    await self.flush_voice()
                except Exception:
                    logger.exception("XP log drain error")

        self._drain_task = loop.create_task(_drain_loop(), name="xp-log-drain")

    def stop(self) -> None:
        if self._drain_task:
            self._drain_task.cancel()
            self._drain_task = None
        for task in list(self._inflight):
            task.cancel()
