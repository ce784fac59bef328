"""
tests/test_award_service.py — XP Award Coordinator
====================================================

End-to-end award pipeline against SQLite: cooldowns, the daily cap,
multipliers, level-ups and collaborator isolation.  Rolls are pinned to
the bottom of each range with a fake RNG.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import UTC, date, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from levelbot.config import CacheConfig, XPRange
from levelbot.database.models import XPSource
from levelbot.engine.cache import CacheLayer
from levelbot.engine.cooldown import CooldownTracker
from levelbot.services import xp_store
from levelbot.services.activity_log import ActivityEntry
from levelbot.services.award_service import XPAwardCoordinator, apply_multipliers, roll_xp
from levelbot.services.daily_cap_service import DailyCapLedger
from levelbot.services.xp_store import VoiceSessionRecord

GUILD = 100
USER = 1
NOW = datetime(2026, 7, 15, 23, 40, tzinfo=UTC)
TODAY = date(2026, 7, 15)


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine synchronously for testing."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


class LowRoll:
    """RNG stand-in that always rolls the minimum."""

    def randint(self, a: int, b: int) -> int:
        return a


def make_member(*role_ids: int) -> SimpleNamespace:
    return SimpleNamespace(id=USER, roles=[SimpleNamespace(id=r) for r in role_ids])


def build(db_engine, leveling, clock, **kwargs) -> XPAwardCoordinator:
    cache = kwargs.pop("cache", None) or CacheLayer(None, CacheConfig(), clock=clock)
    ledger = DailyCapLedger(db_engine, leveling, cache=cache, now=lambda: NOW)
    return XPAwardCoordinator(
        db_engine,
        leveling,
        ledger,
        cooldowns=CooldownTracker(clock),
        cache=cache,
        rng=LowRoll(),
        now=lambda: NOW,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
class TestArithmetic:
    def test_roll_within_range(self):
        import random

        rng = random.Random(7)
        rolls = {roll_xp(rng, XPRange(75, 100)) for _ in range(200)}
        assert min(rolls) >= 75 and max(rolls) <= 100

    @pytest.mark.parametrize(
        "xp, multipliers, expected",
        [
            (75, (1.0,), 75),
            (75, (1.5,), 113),
            (75, (1.0, 2.0), 150),
            (300, (0.25,), 75),
            (250, (0.25,), 63),
            (80, (0.0,), 0),
        ],
    )
    def test_apply_multipliers(self, xp, multipliers, expected):
        assert apply_multipliers(xp, *multipliers) == expected


# ---------------------------------------------------------------------------
# Message & reaction awards
# ---------------------------------------------------------------------------
class TestTextAwards:
    def test_first_message_award(self, db_engine, leveling, clock):
        coordinator = build(db_engine, leveling, clock)
        result = run_async(coordinator.award_from_message(USER, GUILD, make_member()))

        assert result.awarded
        assert result.reason == "awarded"
        assert result.xp == 75
        assert result.total_xp == 75
        assert result.daily_total == 75
        record = xp_store.get_user_xp(db_engine, USER, GUILD)
        assert record.messages == 1
        assert xp_store.get_daily_xp(db_engine, USER, GUILD, TODAY).message_xp == 75

    def test_cooldown_blocks_second_message(self, db_engine, leveling, clock):
        coordinator = build(db_engine, leveling, clock)

        async def _inner():
            first = await coordinator.award_from_message(USER, GUILD)
            clock.advance(59)
            second = await coordinator.award_from_message(USER, GUILD)
            clock.advance(1)
            third = await coordinator.award_from_message(USER, GUILD)
            return first, second, third

        first, second, third = run_async(_inner())
        assert first.awarded
        assert second.reason == "cooldown"
        assert third.awarded
        assert xp_store.get_user_xp(db_engine, USER, GUILD).total_xp == 150

    def test_reaction_cooldown_is_separate(self, db_engine, leveling, clock):
        coordinator = build(db_engine, leveling, clock)

        async def _inner():
            await coordinator.award_from_message(USER, GUILD)
            return await coordinator.award_from_reaction(USER, GUILD)

        result = run_async(_inner())
        assert result.awarded
        assert result.source == XPSource.REACTION
        assert xp_store.get_user_xp(db_engine, USER, GUILD).reactions == 1

    def test_daily_cap_blocks_award(self, db_engine, leveling, clock):
        xp_store.add_daily_xp(db_engine, USER, GUILD, TODAY, 15000, XPSource.VOICE, daily_cap=15000)
        coordinator = build(db_engine, leveling, clock)

        result = run_async(coordinator.award_from_message(USER, GUILD, make_member()))
        assert not result.awarded
        assert result.reason == "daily_cap"
        assert xp_store.get_user_xp(db_engine, USER, GUILD) is None

    def test_tier_member_passes_base_cap(self, db_engine, leveling, clock):
        xp_store.add_daily_xp(db_engine, USER, GUILD, TODAY, 19950, XPSource.VOICE, daily_cap=20000)
        coordinator = build(db_engine, leveling, clock)

        result = run_async(coordinator.award_from_message(USER, GUILD, make_member(300)))
        assert result.awarded
        assert result.daily_total == 20025

    def test_global_multiplier(self, db_engine, leveling, clock):
        coordinator = build(db_engine, replace(leveling, global_multiplier=1.5), clock)
        result = run_async(coordinator.award_from_message(USER, GUILD))
        assert result.xp == 113

    def test_zero_after_multiplier(self, db_engine, leveling, clock):
        coordinator = build(db_engine, replace(leveling, global_multiplier=0.0), clock)
        result = run_async(coordinator.award_from_message(USER, GUILD))
        assert not result.awarded
        assert result.reason == "zero"
        assert xp_store.get_daily_xp(db_engine, USER, GUILD, TODAY) is None

    def test_store_failure_reports_error(self, db_engine, leveling, clock, caplog):
        coordinator = build(db_engine, leveling, clock)
        with patch.object(xp_store, "update_user_xp", side_effect=RuntimeError("db down")):
            result = run_async(coordinator.award_from_message(USER, GUILD))
        assert not result.awarded
        assert result.reason == "error"
        assert any(r.getMessage() == "XP award failed" for r in caplog.records)
        # Cooldown is not consumed by a failed award
        assert not coordinator.cooldowns.is_on_cooldown(GUILD, USER, XPSource.MESSAGE, 60)


# ---------------------------------------------------------------------------
# Level-ups
# ---------------------------------------------------------------------------
class TestLevelUp:
    def _seed(self, db_engine, xp: int) -> None:
        xp_store.update_user_xp(db_engine, USER, GUILD, xp, XPSource.MESSAGE)

    def test_crossing_threshold_notifies(self, db_engine, leveling, clock):
        # Level 1 requires 500 XP with the default curve
        self._seed(db_engine, 450)
        level_up = MagicMock()
        level_up.handle_level_up = AsyncMock()
        coordinator = build(db_engine, leveling, clock, level_up=level_up)
        member = make_member()

        result = run_async(coordinator.award_from_message(USER, GUILD, member))
        assert result.leveled_up
        assert (result.old_level, result.new_level) == (0, 1)
        level_up.handle_level_up.assert_awaited_once_with(member, GUILD, 0, 1, 525, "message")
        assert xp_store.get_user_xp(db_engine, USER, GUILD).level == 1

    def test_no_notification_without_level_change(self, db_engine, leveling, clock):
        level_up = MagicMock()
        level_up.handle_level_up = AsyncMock()
        coordinator = build(db_engine, leveling, clock, level_up=level_up)

        result = run_async(coordinator.award_from_message(USER, GUILD))
        assert not result.leveled_up
        level_up.handle_level_up.assert_not_awaited()

    def test_handler_failure_keeps_award(self, db_engine, leveling, clock, caplog):
        self._seed(db_engine, 450)
        level_up = MagicMock()
        level_up.handle_level_up = AsyncMock(side_effect=RuntimeError("discord down"))
        coordinator = build(db_engine, leveling, clock, level_up=level_up)

        with caplog.at_level(logging.ERROR):
            result = run_async(coordinator.award_from_message(USER, GUILD))
        assert result.awarded
        assert result.new_level == 1
        assert any("Level-up handler failed" in r.getMessage() for r in caplog.records)

    def test_stored_level_never_decreases(self, db_engine, leveling, clock):
        self._seed(db_engine, 100)
        xp_store.update_user_level(db_engine, USER, GUILD, 5)
        coordinator = build(db_engine, leveling, clock)

        result = run_async(coordinator.award_from_message(USER, GUILD))
        assert result.new_level == 5
        assert not result.leveled_up


# ---------------------------------------------------------------------------
# Voice ticks
# ---------------------------------------------------------------------------
def _session(last_xp_age: timedelta) -> VoiceSessionRecord:
    return VoiceSessionRecord(
        user_id=USER,
        guild_id=GUILD,
        channel_id=50,
        join_time=NOW - timedelta(hours=1),
        last_xp_time=NOW - last_xp_age,
        is_muted=False,
        is_deafened=False,
    )


class TestVoiceTick:
    def test_awarded_after_cooldown(self, db_engine, leveling, clock):
        coordinator = build(db_engine, leveling, clock)
        result = run_async(
            coordinator.award_from_voice_tick(_session(timedelta(seconds=300)), GUILD, make_member(), 300)
        )
        assert result.awarded
        assert result.xp == 300
        record = xp_store.get_user_xp(db_engine, USER, GUILD)
        assert record.voice_time == 5
        assert xp_store.get_daily_xp(db_engine, USER, GUILD, TODAY).voice_xp == 300

    def test_session_cooldown(self, db_engine, leveling, clock):
        coordinator = build(db_engine, leveling, clock)
        result = run_async(
            coordinator.award_from_voice_tick(_session(timedelta(seconds=299)), GUILD, make_member(), 300)
        )
        assert result.reason == "cooldown"

    def test_activity_log_receives_channel(self, db_engine, leveling, clock):
        activity_log = MagicMock()
        coordinator = build(db_engine, leveling, clock, activity_log=activity_log)
        run_async(
            coordinator.award_from_voice_tick(
                _session(timedelta(minutes=10)), GUILD, make_member(), 300, channel_name="Lounge"
            )
        )
        entry = activity_log.record.call_args.args[0]
        assert isinstance(entry, ActivityEntry)
        assert entry.source == "voice"
        assert entry.channel_id == 50
        assert entry.channel_name == "Lounge"
        assert entry.daily_cap == 15000


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
class TestQueries:
    def test_user_stats_and_cache_invalidation(self, db_engine, leveling, clock):
        coordinator = build(db_engine, leveling, clock)

        async def _inner():
            await coordinator.award_from_message(USER, GUILD)
            first = await coordinator.get_user_stats(USER, GUILD)
            cached = await coordinator.cache.get_cached_user_stats(GUILD, USER)
            await coordinator.award_from_reaction(USER, GUILD)
            after_award = await coordinator.cache.get_cached_user_stats(GUILD, USER)
            second = await coordinator.get_user_stats(USER, GUILD)
            return first, cached, after_award, second

        first, cached, after_award, second = run_async(_inner())
        assert first["total_xp"] == 75
        assert first["rank"] == 1
        assert first["progress"]["next_level_xp"] == 500
        assert cached["total_xp"] == 75
        assert after_award is None
        assert second["total_xp"] == 150

    def test_unknown_user_stats(self, db_engine, leveling, clock):
        coordinator = build(db_engine, leveling, clock)
        assert run_async(coordinator.get_user_stats(99, GUILD)) is None

    def test_leaderboard_ranked(self, db_engine, leveling, clock):
        for user, xp in ((1, 100), (2, 300)):
            xp_store.update_user_xp(db_engine, user, GUILD, xp, XPSource.MESSAGE)
        coordinator = build(db_engine, leveling, clock)

        rows = run_async(coordinator.get_leaderboard(GUILD, limit=10))
        assert [(r["rank"], r["user_id"]) for r in rows] == [(1, 2), (2, 1)]
