"""
levelbot.bot.cogs.tasks — Periodic Background Tasks
=====================================================

Scheduled housekeeping on ``discord.ext.tasks`` loops:

- **Cache sweep** — every minute, evicts expired in-process cache entries
  and prunes stale cooldown stamps.
- **Retention cleanup** — daily, removes ledger rows older than
  ``leveling.retention_days``.  The reset scheduler prunes too; this loop
  covers a bot that was offline at reset time.

The daily reset itself is not a loop here: it is a one-shot timer chain
owned by :class:`DailyResetScheduler` so it lands on the reset minute.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

if TYPE_CHECKING:
    from levelbot.bot.core import LevelBot

logger = logging.getLogger(__name__)


class PeriodicTasks(commands.Cog):
    """Cog for scheduled background maintenance tasks."""

    def __init__(self, bot: LevelBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        self.cache_sweep_loop.start()
        self.retention_loop.start()

    async def cog_unload(self) -> None:
        self.cache_sweep_loop.cancel()
        self.retention_loop.cancel()

    # -------------------------------------------------------------------
    # Cache sweep: runs every 60 seconds
    # -------------------------------------------------------------------
    @tasks.loop(seconds=60)
    async def cache_sweep_loop(self):
        evicted = self.bot.cache.purge_expired()
        pruned = self.bot.cooldowns.prune()
        if evicted or pruned:
            logger.debug("Evicted %d cache entries, pruned %d cooldowns", evicted, pruned)

    # -------------------------------------------------------------------
    # Retention cleanup: runs every 24 hours
    # -------------------------------------------------------------------
    @tasks.loop(hours=24)
    async def retention_loop(self):
        """Delete ledger rows older than the configured retention window."""
        try:
            deleted = await self.bot.ledger.cleanup_old_records()
            logger.info("Retention task complete: %d daily rows deleted", deleted)
        except Exception:
            logger.exception("Retention task failed", extra={"task": "retention"})

    @retention_loop.before_loop
    async def _wait_retention(self):
        await self.bot.wait_until_ready()


async def setup(bot: LevelBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
