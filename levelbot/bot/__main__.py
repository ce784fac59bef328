"""
levelbot.bot.__main__ — Entry point for ``python -m levelbot.bot``
==================================================================

Wiring:
1. Load .env (secrets, connection strings).
2. Load config.yaml (XP tuning, tiers, reset time, cache TTLs).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Create the LevelBot; it connects Redis and wires services on startup.
5. Start the bot (blocking; runs the asyncio event loop).

Run with::

    python -m levelbot.bot
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from levelbot.bot.core import LevelBot
from levelbot.config import load_config
from levelbot.database.engine import create_db_engine, init_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("levelbot")


def main() -> None:
    """Bootstrap and run the bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Soft configuration.
    cfg = load_config(os.getenv("LEVELBOT_CONFIG", "config.yaml"))
    logger.info(
        "Config loaded: base cap %d, %d tier(s), reset %02d:%02d local",
        cfg.leveling.base_daily_cap,
        len(cfg.leveling.tiers),
        cfg.leveling.clock.reset_hour,
        cfg.leveling.clock.reset_minute,
    )

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Bot.
    bot = LevelBot(cfg=cfg, engine=engine, redis_url=os.getenv("REDIS_URL"))

    # 5. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting levelbot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
