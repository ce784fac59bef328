"""
tests/test_xp_store.py — Persistence Layer (SQLite)
=====================================================

Exercises the sync store functions against the in-memory SQLite engine:
upserts, per-source counters, forward-only levels, daily sub-totals,
guild summaries, retention and voice session bookkeeping.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from levelbot.database.models import XPSource
from levelbot.services import xp_store

GUILD = 100
DAY = date(2026, 7, 15)


class TestLifetimeXP:
    def test_first_award_creates_row(self, db_engine):
        record = xp_store.update_user_xp(db_engine, 1, GUILD, 80, XPSource.MESSAGE)
        assert record.total_xp == 80
        assert record.messages == 1
        assert record.level == 0

    def test_increments_per_source(self, db_engine):
        xp_store.update_user_xp(db_engine, 1, GUILD, 80, XPSource.MESSAGE)
        xp_store.update_user_xp(db_engine, 1, GUILD, 90, XPSource.REACTION)
        record = xp_store.update_user_xp(
            db_engine, 1, GUILD, 300, XPSource.VOICE, voice_minutes=5
        )
        assert record.total_xp == 470
        assert (record.messages, record.reactions, record.voice_time) == (1, 1, 5)

    def test_guilds_are_separate(self, db_engine):
        xp_store.update_user_xp(db_engine, 1, GUILD, 80, XPSource.MESSAGE)
        xp_store.update_user_xp(db_engine, 1, GUILD + 1, 10, XPSource.MESSAGE)
        assert xp_store.get_user_xp(db_engine, 1, GUILD).total_xp == 80
        assert xp_store.get_user_xp(db_engine, 1, GUILD + 1).total_xp == 10

    def test_level_only_moves_forward(self, db_engine):
        xp_store.update_user_xp(db_engine, 1, GUILD, 80, XPSource.MESSAGE)
        assert xp_store.update_user_level(db_engine, 1, GUILD, 3) is True
        assert xp_store.update_user_level(db_engine, 1, GUILD, 2) is False
        assert xp_store.get_user_xp(db_engine, 1, GUILD).level == 3

    def test_leaderboard_and_rank(self, db_engine):
        for user, xp in ((1, 100), (2, 300), (3, 200)):
            xp_store.update_user_xp(db_engine, user, GUILD, xp, XPSource.MESSAGE)

        board = xp_store.get_leaderboard(db_engine, GUILD, limit=2)
        assert [r.user_id for r in board] == [2, 3]
        assert xp_store.get_user_rank(db_engine, 1, GUILD) == 3
        assert xp_store.get_user_rank(db_engine, 99, GUILD) is None

    def test_remove_users(self, db_engine):
        for user in (1, 2, 3):
            xp_store.update_user_xp(db_engine, user, GUILD, 10, XPSource.MESSAGE)
        assert xp_store.remove_users(db_engine, GUILD, [1, 3]) == 2
        assert xp_store.remove_users(db_engine, GUILD, []) == 0
        assert [r.user_id for r in xp_store.get_leaderboard(db_engine, GUILD)] == [2]


class TestDailyXP:
    def test_add_tracks_source_subtotals(self, db_engine):
        xp_store.add_daily_xp(db_engine, 1, GUILD, DAY, 80, XPSource.MESSAGE, daily_cap=15000)
        total = xp_store.add_daily_xp(
            db_engine, 1, GUILD, DAY, 300, XPSource.VOICE, daily_cap=20000, tier_level=3, tier_role_id=300
        )
        assert total == 380

        record = xp_store.get_daily_xp(db_engine, 1, GUILD, DAY)
        assert (record.message_xp, record.voice_xp, record.reaction_xp) == (80, 300, 0)
        assert record.daily_cap == 20000
        assert record.tier_level == 3
        assert record.tier_role_id == 300

    def test_new_day_starts_fresh(self, db_engine):
        xp_store.add_daily_xp(db_engine, 1, GUILD, DAY, 80, XPSource.MESSAGE, daily_cap=15000)
        assert xp_store.get_daily_xp(db_engine, 1, GUILD, DAY + timedelta(days=1)) is None

    def test_guild_summary(self, db_engine):
        xp_store.add_daily_xp(db_engine, 1, GUILD, DAY, 100, XPSource.MESSAGE, daily_cap=100)
        xp_store.add_daily_xp(db_engine, 2, GUILD, DAY, 50, XPSource.REACTION, daily_cap=15000)
        xp_store.add_daily_xp(db_engine, 3, GUILD + 1, DAY, 999, XPSource.MESSAGE, daily_cap=15000)

        summary = xp_store.get_guild_daily_summary(db_engine, GUILD, DAY)
        assert summary.active_users == 2
        assert summary.total_xp == 150
        assert summary.average_xp == 75.0
        assert summary.highest_xp == 100
        assert summary.reaction_xp == 50
        assert summary.users_at_cap == 1

        at_cap = xp_store.get_users_at_cap(db_engine, GUILD, DAY)
        assert [r.user_id for r in at_cap] == [1]

    def test_empty_summary(self, db_engine):
        summary = xp_store.get_guild_daily_summary(db_engine, GUILD, DAY)
        assert summary.active_users == 0
        assert summary.total_xp == 0

    def test_delete_for_day_scoped(self, db_engine):
        xp_store.add_daily_xp(db_engine, 1, GUILD, DAY, 10, XPSource.MESSAGE, daily_cap=100)
        xp_store.add_daily_xp(db_engine, 1, GUILD + 1, DAY, 10, XPSource.MESSAGE, daily_cap=100)
        assert xp_store.delete_daily_xp_for_day(db_engine, DAY, GUILD) == 1
        assert xp_store.get_daily_xp(db_engine, 1, GUILD + 1, DAY) is not None

    def test_cleanup_old(self, db_engine):
        old = DAY - timedelta(days=31)
        xp_store.add_daily_xp(db_engine, 1, GUILD, old, 10, XPSource.MESSAGE, daily_cap=100)
        xp_store.add_daily_xp(db_engine, 1, GUILD, DAY, 10, XPSource.MESSAGE, daily_cap=100)
        assert xp_store.cleanup_old_daily_xp(db_engine, DAY - timedelta(days=30)) == 1
        assert xp_store.get_daily_xp(db_engine, 1, GUILD, DAY) is not None


class TestVoiceSessions:
    NOW = datetime(2026, 7, 15, 12, 0, tzinfo=UTC)

    def test_join_defaults_last_xp_to_now(self, db_engine):
        record = xp_store.set_voice_session(db_engine, 1, GUILD, 50, self.NOW)
        assert record.last_xp_time == self.NOW
        stored = xp_store.get_voice_session(db_engine, 1, GUILD)
        assert stored.channel_id == 50
        assert stored.last_xp_time.tzinfo is not None

    def test_move_replaces_session(self, db_engine):
        xp_store.set_voice_session(db_engine, 1, GUILD, 50, self.NOW)
        xp_store.set_voice_session(db_engine, 1, GUILD, 51, self.NOW, is_muted=True)
        sessions = xp_store.get_voice_sessions(db_engine, GUILD)
        assert len(sessions) == 1
        assert sessions[0].channel_id == 51
        assert sessions[0].is_muted

    def test_flags_touch_and_delete(self, db_engine):
        xp_store.set_voice_session(db_engine, 1, GUILD, 50, self.NOW)
        assert xp_store.update_voice_flags(db_engine, 1, GUILD, is_muted=False, is_deafened=True)
        later = self.NOW + timedelta(minutes=5)
        assert xp_store.touch_voice_session(db_engine, 1, GUILD, later)

        stored = xp_store.get_voice_session(db_engine, 1, GUILD)
        assert stored.is_deafened
        assert stored.last_xp_time == later

        assert xp_store.delete_voice_session(db_engine, 1, GUILD)
        assert xp_store.get_voice_session(db_engine, 1, GUILD) is None
        assert not xp_store.delete_voice_session(db_engine, 1, GUILD)

    def test_flags_without_session(self, db_engine):
        assert not xp_store.update_voice_flags(db_engine, 1, GUILD, is_muted=True, is_deafened=False)


class TestGuildSettings:
    def test_save_and_get(self, db_engine):
        assert xp_store.get_guild_settings(db_engine, GUILD) is None
        xp_store.save_guild_settings(db_engine, GUILD, levelup_channel_id=5)
        record = xp_store.save_guild_settings(db_engine, GUILD, xp_log_enabled=True)
        assert record.levelup_channel_id == 5
        assert record.xp_log_enabled is True
        assert record.levelup_enabled is True

    def test_unknown_field_rejected(self, db_engine):
        with pytest.raises(ValueError):
            xp_store.save_guild_settings(db_engine, GUILD, colour="red")
