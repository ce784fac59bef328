"""
levelbot.services.guild_settings — Per-Guild Notification Routing
==================================================================

Resolves where level-up and XP-log messages go for a guild.  A stored
``guild_settings`` row wins; without one, the channels from
``config.yaml`` apply.  Resolved settings are cached for the default TTL.
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from sqlalchemy import Engine

from levelbot.config import LevelBotConfig
from levelbot.database.engine import run_db
from levelbot.engine.cache import CacheLayer
from levelbot.services import xp_store
from levelbot.services.xp_store import GuildSettingsRecord

logger = logging.getLogger(__name__)


class GuildSettingsResolver:
    def __init__(self, engine: Engine, cfg: LevelBotConfig, cache: CacheLayer | None = None) -> None:
        self.engine = engine
        self.cfg = cfg
        self.cache = cache

    def defaults(self, guild_id: int) -> GuildSettingsRecord:
        return GuildSettingsRecord(
            guild_id=guild_id,
            levelup_channel_id=self.cfg.levelup_channel_id,
            levelup_enabled=True,
            xp_log_channel_id=self.cfg.xp_log_channel_id,
            xp_log_enabled=self.cfg.xp_log_channel_id is not None,
        )

    async def get(self, guild_id: int) -> GuildSettingsRecord:
        key = f"guild_settings:{guild_id}"
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached:
                return GuildSettingsRecord(**cached)

        stored = await run_db(xp_store.get_guild_settings, self.engine, guild_id)
        if stored is None:
            resolved = self.defaults(guild_id)
        else:
            resolved = GuildSettingsRecord(
                guild_id=guild_id,
                levelup_channel_id=stored.levelup_channel_id or self.cfg.levelup_channel_id,
                levelup_enabled=stored.levelup_enabled,
                xp_log_channel_id=stored.xp_log_channel_id or self.cfg.xp_log_channel_id,
                xp_log_enabled=stored.xp_log_enabled,
            )

        if self.cache is not None:
            await self.cache.set(key, asdict(resolved))
        return resolved

    async def update(self, guild_id: int, **changes) -> GuildSettingsRecord:
        """Persist *changes* and drop the cached resolution."""
        record = await run_db(xp_store.save_guild_settings, self.engine, guild_id, **changes)
        if self.cache is not None:
            await self.cache.delete(f"guild_settings:{guild_id}")
        logger.info("Guild %s settings updated: %s", guild_id, ", ".join(sorted(changes)))
        return record
