"""
levelbot.engine.cooldown — Per-Source Award Cooldowns
======================================================

Process-local map of ``"{guild}:{user}:{source}" → last award time``.
Lost on restart; the worst case is one early award per member.

Only touched from the event loop thread, so no lock is taken.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

# Entries older than this are dropped by :meth:`CooldownTracker.prune`.
DEFAULT_MAX_AGE = 3600


def cooldown_key(guild_id: int, user_id: int, source: str) -> str:
    return f"{guild_id}:{user_id}:{source}"


class CooldownTracker:
    """Remembers when each (guild, user, source) last earned XP."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last_award: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._last_award)

    def remaining(self, guild_id: int, user_id: int, source: str, window: float) -> float:
        """Seconds left before the key may earn again (0 when free)."""
        last = self._last_award.get(cooldown_key(guild_id, user_id, source))
        if last is None:
            return 0.0
        return max(0.0, window - (self._clock() - last))

    def is_on_cooldown(self, guild_id: int, user_id: int, source: str, window: float) -> bool:
        return self.remaining(guild_id, user_id, source, window) > 0

    def mark(self, guild_id: int, user_id: int, source: str) -> None:
        self._last_award[cooldown_key(guild_id, user_id, source)] = self._clock()

    def prune(self, max_age: float = DEFAULT_MAX_AGE) -> int:
        """Forget entries older than *max_age* seconds.  Returns how many."""
        cutoff = self._clock() - max_age
        stale = [k for k, t in self._last_award.items() if t <= cutoff]
        for key in stale:
            del self._last_award[key]
        if stale:
            logger.debug("Pruned %d stale cooldown entries", len(stale))
        return len(stale)
