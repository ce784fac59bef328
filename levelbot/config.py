"""
levelbot.config — YAML Configuration Loader
============================================

Reads ``config.yaml`` for everything that is not a secret: Discord identity,
XP ranges and cooldowns, the tier ladder that raises the daily cap, the
business-day clock, voice tracking knobs and cache TTLs.  Secrets and
connection strings (``DISCORD_TOKEN``, ``DATABASE_URL``, ``REDIS_URL``) come
from ``.env``.

Usage::

    from levelbot.config import load_config

    cfg = load_config()                    # reads ./config.yaml by default
    print(cfg.leveling.base_daily_cap)     # 15000
    print(cfg.leveling.tiers[0].rank)      # highest configured tier
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

MAX_TIER_RANK = 10


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class XPRange:
    """Inclusive integer range an award is rolled from."""

    minimum: int
    maximum: int


@dataclass(frozen=True, slots=True)
class TierConfig:
    """One rung of the tier ladder: holding *role_id* raises the daily cap."""

    rank: int
    role_id: int
    daily_cap: int


@dataclass(frozen=True, slots=True)
class BusinessClock:
    """Fixed-offset zone with the US daylight-saving rule and a reset time.

    The business day rolls over at ``reset_hour:reset_minute`` local time,
    not at midnight.
    """

    reset_hour: int = 19
    reset_minute: int = 35
    standard_offset_hours: int = -5
    observe_dst: bool = True


@dataclass(frozen=True, slots=True)
class VoiceConfig:
    """Voice presence tracking knobs."""

    sweep_interval_seconds: int = 300
    min_members: int = 2
    afk_penalty: float = 0.25
    exempt_multiplier: float = 1.0
    anti_afk: bool = True
    exempt_user_ids: frozenset[int] = frozenset()
    exempt_role_ids: frozenset[int] = frozenset()


@dataclass(frozen=True, slots=True)
class LevelFormula:
    """Parameters of the XP → level curve."""

    base_xp: int = 500
    multiplier: float = 1.75
    curve: str = "exponential"
    max_level: int = 50
    early_level_penalty: float = 1.8
    early_level_threshold: int = 10


@dataclass(frozen=True, slots=True)
class LevelingConfig:
    """Everything the award pipeline and the daily cap ledger read."""

    base_daily_cap: int = 15000
    message_xp: XPRange = XPRange(75, 100)
    reaction_xp: XPRange = XPRange(75, 100)
    voice_xp: XPRange = XPRange(250, 350)
    message_cooldown: int = 60
    reaction_cooldown: int = 300
    voice_cooldown: int = 300
    global_multiplier: float = 1.0
    retention_days: int = 30
    tiers: tuple[TierConfig, ...] = ()
    clock: BusinessClock = BusinessClock()
    voice: VoiceConfig = VoiceConfig()
    formula: LevelFormula = LevelFormula()
    level_roles: dict[int, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Cache namespace and TTLs (seconds)."""

    key_prefix: str = "levelbot:"
    default_ttl: int = 3600
    stats_ttl: int = 300
    leaderboard_ttl: int = 600
    validated_users_ttl: int = 600
    validated_users_max_age: int = 300
    invalidation_grace_seconds: int = 30


@dataclass(frozen=True, slots=True)
class LevelBotConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    bot_prefix: str
    guild_id: int | None = None
    levelup_channel_id: int | None = None
    xp_log_channel_id: int | None = None
    leveling: LevelingConfig = LevelingConfig()
    cache: CacheConfig = CacheConfig()


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------
def _optional_id(value: Any) -> int | None:
    return int(value) if value else None


def _xp_range(raw: dict | None, default: XPRange) -> XPRange:
    if not raw:
        return default
    minimum = int(raw.get("min", default.minimum))
    maximum = int(raw.get("max", default.maximum))
    if minimum > maximum:
        raise ValueError(f"XP range min ({minimum}) is greater than max ({maximum})")
    return XPRange(minimum, maximum)


def parse_tiers(raw: list | None) -> tuple[TierConfig, ...]:
    """Validate the ``tiers`` list and return it sorted by rank, highest first.

    Each entry needs ``rank`` (1..10), ``role_id`` and a positive
    ``daily_cap``.  Malformed entries are logged and dropped, so a member
    holding only a broken tier's role falls back to the base cap.
    """
    tiers: dict[int, TierConfig] = {}
    for index, entry in enumerate(raw or []):
        try:
            rank = int(entry["rank"])
            role_id = int(entry["role_id"])
            daily_cap = int(entry["daily_cap"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed tier entry #%d: %r", index, entry)
            continue

        if not 1 <= rank <= MAX_TIER_RANK:
            logger.warning("Ignoring tier with out-of-range rank %d", rank)
            continue
        if daily_cap <= 0:
            logger.warning("Ignoring tier %d: daily_cap must be positive (got %d)", rank, daily_cap)
            continue
        if rank in tiers:
            logger.warning("Duplicate tier rank %d; keeping the first entry", rank)
            continue

        tiers[rank] = TierConfig(rank=rank, role_id=role_id, daily_cap=daily_cap)

    return tuple(sorted(tiers.values(), key=lambda t: t.rank, reverse=True))


def _parse_clock(raw: dict | None) -> BusinessClock:
    raw = raw or {}
    hour = int(raw.get("reset_hour", 19))
    minute = int(raw.get("reset_minute", 35))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid daily reset time {hour:02d}:{minute:02d}")
    return BusinessClock(
        reset_hour=hour,
        reset_minute=minute,
        standard_offset_hours=int(raw.get("standard_offset_hours", -5)),
        observe_dst=bool(raw.get("observe_dst", True)),
    )


def _parse_voice(raw: dict | None) -> VoiceConfig:
    raw = raw or {}
    return VoiceConfig(
        sweep_interval_seconds=int(raw.get("sweep_interval_seconds", 300)),
        min_members=int(raw.get("min_members", 2)),
        afk_penalty=float(raw.get("afk_penalty", 0.25)),
        exempt_multiplier=float(raw.get("exempt_multiplier", 1.0)),
        anti_afk=bool(raw.get("anti_afk", True)),
        exempt_user_ids=frozenset(int(u) for u in raw.get("exempt_user_ids") or []),
        exempt_role_ids=frozenset(int(r) for r in raw.get("exempt_role_ids") or []),
    )


def _parse_formula(raw: dict | None) -> LevelFormula:
    raw = raw or {}
    curve = str(raw.get("curve", "exponential"))
    if curve not in ("exponential", "linear", "logarithmic"):
        logger.warning("Unknown level curve %r; using exponential", curve)
        curve = "exponential"
    return LevelFormula(
        base_xp=int(raw.get("base_xp", 500)),
        multiplier=float(raw.get("multiplier", 1.75)),
        curve=curve,
        max_level=int(raw.get("max_level", 50)),
        early_level_penalty=float(raw.get("early_level_penalty", 1.8)),
        early_level_threshold=int(raw.get("early_level_threshold", 10)),
    )


def parse_leveling(raw: dict | None) -> LevelingConfig:
    """Build a :class:`LevelingConfig` from the ``leveling`` mapping."""
    raw = raw or {}
    xp = raw.get("xp") or {}
    cooldowns = raw.get("cooldowns") or {}
    defaults = LevelingConfig()
    return LevelingConfig(
        base_daily_cap=int(raw.get("base_daily_cap", defaults.base_daily_cap)),
        message_xp=_xp_range(xp.get("message"), defaults.message_xp),
        reaction_xp=_xp_range(xp.get("reaction"), defaults.reaction_xp),
        voice_xp=_xp_range(xp.get("voice"), defaults.voice_xp),
        message_cooldown=int(cooldowns.get("message", defaults.message_cooldown)),
        reaction_cooldown=int(cooldowns.get("reaction", defaults.reaction_cooldown)),
        voice_cooldown=int(cooldowns.get("voice", defaults.voice_cooldown)),
        global_multiplier=float(raw.get("global_multiplier", 1.0)),
        retention_days=int(raw.get("retention_days", defaults.retention_days)),
        tiers=parse_tiers(raw.get("tiers")),
        clock=_parse_clock(raw.get("daily_reset")),
        voice=_parse_voice(raw.get("voice")),
        formula=_parse_formula(raw.get("formula")),
        level_roles={int(k): int(v) for k, v in (raw.get("level_roles") or {}).items()},
    )


def _parse_cache(raw: dict | None) -> CacheConfig:
    raw = raw or {}
    defaults = CacheConfig()
    kwargs = {
        name: int(raw[name])
        for name in (
            "default_ttl",
            "stats_ttl",
            "leaderboard_ttl",
            "validated_users_ttl",
            "validated_users_max_age",
            "invalidation_grace_seconds",
        )
        if name in raw
    }
    config = CacheConfig(key_prefix=str(raw.get("key_prefix", defaults.key_prefix)), **kwargs)
    if config.validated_users_max_age > config.validated_users_ttl:
        logger.warning(
            "validated_users_max_age (%d) exceeds validated_users_ttl (%d); "
            "entries will expire before they go stale",
            config.validated_users_max_age,
            config.validated_users_ttl,
        )
    return config


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> LevelBotConfig:
    """Read *path* and return a :class:`LevelBotConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return LevelBotConfig(
        bot_prefix=raw["bot_prefix"],
        guild_id=_optional_id(raw.get("guild_id")),
        levelup_channel_id=_optional_id(raw.get("levelup_channel_id")),
        xp_log_channel_id=_optional_id(raw.get("xp_log_channel_id")),
        leveling=parse_leveling(raw.get("leveling")),
        cache=_parse_cache(raw.get("cache")),
    )
