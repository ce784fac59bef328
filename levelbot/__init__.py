"""
levelbot — XP Leveling With Daily Caps for Discord Communities
===============================================================
Awards XP for messages, reactions and voice presence, turns it into levels,
and enforces a per-user daily ceiling that tier roles can raise.

Package layout::

    levelbot/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Level curve math
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # user_levels, daily_xp, voice_sessions, guild_settings
    ├── bot/
    │   ├── core.py        # Bot subclass, cog loader, service wiring
    │   └── cogs/
    │       ├── activity.py    # on_message / reactions → award coordinator
    │       ├── voice.py       # Voice state tracking + sweep loop
    │       ├── membership.py  # Cache invalidation on member changes
    │       ├── leveling.py    # /level, /leaderboard, /daily
    │       ├── admin.py       # Admin slash commands
    │       └── tasks.py       # Fallback-cache purge, retention safety net
    ├── engine/
    │   ├── cache.py       # Redis primary + in-process fallback cache
    │   ├── daily_cap.py   # Business-day clock, DST rule, tier resolution
    │   └── cooldown.py    # Per-source award cooldowns
    └── services/
        ├── xp_store.py            # Persistent store operations
        ├── daily_cap_service.py   # Daily cap ledger + reset scheduler
        ├── award_service.py       # XP award coordinator
        ├── voice_service.py       # Voice presence tracker
        ├── leaderboard_service.py # Validated leaderboard reads
        ├── guild_settings.py      # Per-guild notification routing
        ├── level_up.py            # Level-up announcements + level roles
        ├── activity_log.py        # XP log channel feed
        └── embeds.py              # Embed builders
"""

__version__ = "0.1.0"
