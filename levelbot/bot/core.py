"""
levelbot.bot.core — Bot Instance, Service Wiring & Cog Loader
==============================================================

:class:`LevelBot` subclasses ``commands.Bot`` and carries every shared
service so cogs can reach them through ``self.bot``:

* ``bot.cache``           — Redis cache with in-process fallback
* ``bot.ledger``          — daily cap ledger
* ``bot.coordinator``     — XP award coordinator
* ``bot.voice_tracker``   — voice presence tracker
* ``bot.reset_scheduler`` — daily reset scheduler

Services are built in :meth:`LevelBot.setup_hook`, once an event loop
exists to connect Redis on, and before any cog is loaded.
"""

from __future__ import annotations

import asyncio
import logging
import os

import discord
from discord.ext import commands
from sqlalchemy import Engine

from levelbot.config import LevelBotConfig
from levelbot.engine.cache import CacheLayer
from levelbot.engine.cooldown import CooldownTracker
from levelbot.services.activity_log import XPActivityLogger
from levelbot.services.award_service import XPAwardCoordinator
from levelbot.services.daily_cap_service import DailyCapLedger, DailyResetScheduler
from levelbot.services.guild_settings import GuildSettingsResolver
from levelbot.services.level_up import LevelUpAnnouncer
from levelbot.services.voice_service import VoiceTracker

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "levelbot.bot.cogs.activity",
    "levelbot.bot.cogs.voice",
    "levelbot.bot.cogs.membership",
    "levelbot.bot.cogs.leveling",
    "levelbot.bot.cogs.admin",
    "levelbot.bot.cogs.tasks",
]


class LevelBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`LevelBotConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to PostgreSQL.
    redis_url:
        Redis connection URL, or ``None`` to cache in process memory only.
    """

    cache: CacheLayer
    ledger: DailyCapLedger
    coordinator: XPAwardCoordinator
    voice_tracker: VoiceTracker
    reset_scheduler: DailyResetScheduler
    activity_log: XPActivityLogger
    guild_settings: GuildSettingsResolver

    def __init__(self, cfg: LevelBotConfig, engine: Engine, redis_url: str | None = None) -> None:
        # Privileged intents (enable in the Developer Portal):
        #   GUILD_MEMBERS: member cache for tier roles and voice checks
        intents = discord.Intents.default()
        intents.members = True
        intents.voice_states = True
        intents.message_content = False
        intents.presences = False

        super().__init__(command_prefix=cfg.bot_prefix, intents=intents)

        self.cfg = cfg
        self.engine = engine
        self.redis_url = redis_url
        self.cooldowns = CooldownTracker()
        self._voice_synced = False

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Connect the cache, wire services, then load every cog."""
        self.cache = await CacheLayer.connect(self.redis_url, self.cfg.cache)
        self._wire_services()

        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

    def _wire_services(self) -> None:
        leveling = self.cfg.leveling
        self.guild_settings = GuildSettingsResolver(self.engine, self.cfg, self.cache)
        self.ledger = DailyCapLedger(self.engine, leveling, cache=self.cache)
        self.activity_log = XPActivityLogger(self.guild_settings, self.get_channel)
        self.coordinator = XPAwardCoordinator(
            self.engine,
            leveling,
            self.ledger,
            cooldowns=self.cooldowns,
            cache=self.cache,
            level_up=LevelUpAnnouncer(self.guild_settings, self.get_channel, leveling.level_roles),
            activity_log=self.activity_log,
        )
        self.voice_tracker = VoiceTracker(self.engine, leveling, self.coordinator)
        self.reset_scheduler = DailyResetScheduler(self.ledger)

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        assert self.user is not None
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

        # --- Slash-command sync ---------------------------------------------
        dev_guild_id = os.getenv("DEV_GUILD_ID")
        try:
            if dev_guild_id:
                guild = discord.Object(id=int(dev_guild_id))
                self.tree.copy_global_to(guild=guild)
                synced = await self.tree.sync(guild=guild)
                logger.info("Synced %d commands to dev guild %s", len(synced), dev_guild_id)
            else:
                synced = await self.tree.sync()
                logger.info("Synced %d commands globally", len(synced))
        except discord.HTTPException:
            logger.exception("Slash-command sync failed")

        # --- Reconcile voice sessions with who is actually in voice --------
        if not self._voice_synced:
            try:
                await self.voice_tracker.cleanup_orphaned_sessions(self.guilds)
                await self.voice_tracker.sync_existing_sessions(self.guilds)
                self._voice_synced = True
            except Exception:
                logger.exception("Voice session sync failed")

        # --- Background tasks ------------------------------------------------
        self.reset_scheduler.start()
        self.activity_log.start(asyncio.get_running_loop())
        logger.info("Daily reset scheduled for %s", self.ledger.next_reset().isoformat())

    async def close(self) -> None:
        """Graceful shutdown: stop timers, drain the XP log, close Redis."""
        logger.info("Bot shutting down…")
        if hasattr(self, "reset_scheduler"):
            self.reset_scheduler.stop()
        if hasattr(self, "activity_log"):
            self.activity_log.stop()
            try:
                await self.activity_log.flush_voice()
            except Exception:
                logger.exception("Final XP log flush failed")
        if hasattr(self, "cache"):
            await self.cache.close()
        await super().close()
