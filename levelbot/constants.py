"""
levelbot.constants — Shared Constants & Level Curve
====================================================

Single source of truth for the XP → level formula and a few presentation
constants.  Import from here instead of duplicating in cogs and services.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from levelbot.config import LevelFormula

# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------
RANK_BADGES: list[str] = ["\U0001f947", "\U0001f948", "\U0001f949"]  # 🥇🥈🥉

SOURCE_EMOJI: dict[str, str] = {
    "message": "\U0001f4ac",   # 💬
    "reaction": "\U0001f44d",  # 👍
    "voice": "\U0001f3a4",     # 🎤
}

COLOR_LEVEL_UP = 0xF1C40F
COLOR_XP_LOG = 0x5865F2

_DEFAULT_FORMULA = LevelFormula()


# ---------------------------------------------------------------------------
# Leveling formula
# ---------------------------------------------------------------------------
def xp_for_level(level: int, formula: LevelFormula | None = None) -> int:
    """Total XP required to reach *level*.

    Levels at or below ``early_level_threshold`` use the curve exponent
    scaled by ``early_level_penalty``.  Level 0 always needs 0 XP.
    """
    if level <= 0:
        return 0
    f = formula or _DEFAULT_FORMULA

    exponent = f.multiplier
    if level <= f.early_level_threshold:
        exponent *= f.early_level_penalty

    if f.curve == "linear":
        return math.floor(f.base_xp * level * exponent)
    if f.curve == "logarithmic":
        return math.floor(f.base_xp * math.log(level + 1) * exponent * 2)
    return math.floor(f.base_xp * level ** exponent)


def level_for_xp(total_xp: int, formula: LevelFormula | None = None) -> int:
    """Highest level whose requirement is not above *total_xp*.

    Walks levels upward and stops at the first one *total_xp* cannot
    afford, so the result never decreases as XP grows.
    """
    if total_xp <= 0:
        return 0
    f = formula or _DEFAULT_FORMULA
    for level in range(1, f.max_level + 1):
        if total_xp < xp_for_level(level, f):
            return level - 1
    return f.max_level


@dataclass(frozen=True, slots=True)
class LevelProgress:
    level: int
    level_floor_xp: int
    next_level_xp: int
    progress_xp: int
    span_xp: int
    percentage: int


def level_progress(total_xp: int, formula: LevelFormula | None = None) -> LevelProgress:
    """Where *total_xp* sits between its level and the next one."""
    f = formula or _DEFAULT_FORMULA
    level = level_for_xp(total_xp, f)
    if level >= f.max_level:
        cap_xp = xp_for_level(f.max_level, f)
        return LevelProgress(f.max_level, cap_xp, cap_xp, 0, 0, 100)

    floor_xp = xp_for_level(level, f)
    next_xp = xp_for_level(level + 1, f)
    span = next_xp - floor_xp
    progress = total_xp - floor_xp
    percentage = max(0, min(100, round(progress / span * 100))) if span > 0 else 100
    return LevelProgress(level, floor_xp, next_xp, progress, span, percentage)
