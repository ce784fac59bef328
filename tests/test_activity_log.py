"""
tests/test_activity_log.py — XP Activity Feed
===============================================
"""

from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord

from levelbot.services.activity_log import ActivityEntry, XPActivityLogger
from levelbot.services.xp_store import GuildSettingsRecord

GUILD = 100
LOG_CHANNEL = 88


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine synchronously for testing."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


def entry(user_id=1, source="message", channel_id=None, channel_name=None, xp=80) -> ActivityEntry:
    return ActivityEntry(
        user_id=user_id,
        guild_id=GUILD,
        source=source,
        xp=xp,
        total_xp=1000,
        level=2,
        old_level=2,
        daily_total=500,
        daily_cap=15000,
        channel_id=channel_id,
        channel_name=channel_name,
    )


def make_logger(enabled: bool = True):
    channel = MagicMock(spec=discord.TextChannel)
    channel.send = AsyncMock()
    record = GuildSettingsRecord(guild_id=GUILD, xp_log_channel_id=LOG_CHANNEL, xp_log_enabled=enabled)
    settings = SimpleNamespace(get=AsyncMock(return_value=record))
    return XPActivityLogger(settings, {LOG_CHANNEL: channel}.get, flush_interval=0.01), channel


class TestRecord:
    def test_message_entry_posted(self):
        activity, channel = make_logger()

        async def _inner():
            activity.record(entry())
            await asyncio.gather(*activity._inflight)

        run_async(_inner())
        channel.send.assert_awaited_once()
        assert "80 XP" in channel.send.call_args.kwargs["embed"].description

    def test_disabled_log_does_not_post(self):
        activity, channel = make_logger(enabled=False)

        async def _inner():
            activity.record(entry())
            await asyncio.gather(*activity._inflight)

        run_async(_inner())
        channel.send.assert_not_awaited()

    def test_no_running_loop_only_logs(self, caplog):
        activity, channel = make_logger()
        with caplog.at_level(logging.INFO):
            activity.record(entry())
        assert not activity._inflight
        assert any("XP +80" in r.getMessage() for r in caplog.records)

    def test_send_failure_swallowed(self):
        activity, channel = make_logger()
        channel.send = AsyncMock(side_effect=discord.HTTPException(MagicMock(status=500, reason="x"), "boom"))

        async def _inner():
            activity.record(entry())
            await asyncio.gather(*activity._inflight)

        run_async(_inner())


class TestVoiceBatching:
    def test_voice_entries_batched_per_channel(self):
        activity, channel = make_logger()
        activity.record(entry(1, "voice", 50, "Lounge", xp=250))
        activity.record(entry(2, "voice", 50, "Lounge", xp=250))
        activity.record(entry(3, "voice", 51, "Stage", xp=63))
        assert activity.pending_voice_entries == 3

        flushed = run_async(activity.flush_voice())
        assert flushed == 3
        assert activity.pending_voice_entries == 0
        titles = sorted(c.kwargs["embed"].title for c in channel.send.call_args_list)
        assert [t.split("· ")[1] for t in titles] == ["Lounge", "Stage"]

    def test_flush_empty(self):
        activity, channel = make_logger()
        assert run_async(activity.flush_voice()) == 0
        channel.send.assert_not_awaited()

    def test_drain_task_flushes(self):
        activity, channel = make_logger()

        async def _inner():
            activity.start(asyncio.get_running_loop())
            activity.record(entry(1, "voice", 50, "Lounge", xp=250))
            await asyncio.sleep(0.05)
            activity.stop()
            await asyncio.sleep(0)

        run_async(_inner())
        channel.send.assert_awaited_once()
        assert activity.pending_voice_entries == 0
