"""
tests/test_leaderboard_service.py — Validated Leaderboards
============================================================
"""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from levelbot.config import CacheConfig
from levelbot.database.models import XPSource
from levelbot.engine.cache import CacheLayer
from levelbot.services import xp_store
from levelbot.services.leaderboard_service import (
    MemberLookupError,
    get_validated_leaderboard,
    resolve_member,
)

GUILD = 100


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine synchronously for testing."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


def not_found() -> discord.NotFound:
    return discord.NotFound(MagicMock(status=404, reason="Not Found"), "Unknown Member")


def make_guild(present: dict[int, str], fetchable: dict[int, str] | None = None):
    """Guild whose cache holds *present* and whose REST API knows *fetchable*."""
    fetchable = fetchable or {}
    members = {uid: SimpleNamespace(id=uid, bot=False, display_name=name) for uid, name in present.items()}

    async def fetch_member(user_id):
        if user_id in fetchable:
            return SimpleNamespace(id=user_id, bot=False, display_name=fetchable[user_id])
        raise not_found()

    return SimpleNamespace(id=GUILD, get_member=members.get, fetch_member=AsyncMock(side_effect=fetch_member))


@pytest.fixture
def cache(clock) -> CacheLayer:
    return CacheLayer(None, CacheConfig(), clock=clock)


@pytest.fixture
def seeded(db_engine):
    for user, xp in ((1, 300), (2, 200), (3, 100)):
        xp_store.update_user_xp(db_engine, user, GUILD, xp, XPSource.MESSAGE)
    return db_engine


class TestResolveMember:
    def test_cached_member_skips_fetch(self):
        guild = make_guild({1: "ada"})
        member = run_async(resolve_member(guild, 1))
        assert member.display_name == "ada"
        guild.fetch_member.assert_not_awaited()

    def test_fetch_fallback(self):
        guild = make_guild({}, {1: "ada"})
        assert run_async(resolve_member(guild, 1)).display_name == "ada"

    def test_not_found(self):
        assert run_async(resolve_member(make_guild({}), 1)) is None

    def test_timeout(self):
        async def slow(user_id):
            await asyncio.sleep(1)

        guild = SimpleNamespace(id=GUILD, get_member=lambda _: None, fetch_member=slow)
        with pytest.raises(MemberLookupError):
            run_async(resolve_member(guild, 1, timeout=0.01))

    def test_http_error_is_not_departure(self):
        error = discord.HTTPException(MagicMock(status=503, reason="Service Unavailable"), "busy")
        guild = SimpleNamespace(id=GUILD, get_member=lambda _: None, fetch_member=AsyncMock(side_effect=error))
        with pytest.raises(MemberLookupError):
            run_async(resolve_member(guild, 1))


class TestValidatedLeaderboard:
    def test_departed_members_pruned(self, seeded, cache):
        guild = make_guild({1: "ada"}, {3: "cy"})
        page = run_async(get_validated_leaderboard(seeded, cache, guild, limit=10))

        assert not page.from_cache
        assert page.removed == [2]
        assert [(u["rank"], u["user_id"], u["display_name"]) for u in page.users] == [
            (1, 1, "ada"),
            (2, 3, "cy"),
        ]
        assert [r.user_id for r in xp_store.get_leaderboard(seeded, GUILD)] == [1, 3]

    def test_prune_disabled_keeps_rows(self, seeded, cache):
        guild = make_guild({1: "ada"})
        page = run_async(get_validated_leaderboard(seeded, cache, guild, prune_departed=False))
        assert page.removed == [2, 3]
        assert len(xp_store.get_leaderboard(seeded, GUILD)) == 3

    def test_second_call_served_from_cache(self, seeded, cache):
        guild = make_guild({1: "ada", 2: "bo", 3: "cy"})

        async def _inner():
            await get_validated_leaderboard(seeded, cache, guild)
            return await get_validated_leaderboard(seeded, cache, guild, limit=2)

        page = run_async(_inner())
        assert page.from_cache
        assert [u["user_id"] for u in page.users] == [1, 2]

    def test_invalidation_blocks_stale_write(self, seeded, cache, clock):
        guild = make_guild({1: "ada", 2: "bo", 3: "cy"})

        async def _inner():
            await cache.invalidate_guild_cache(GUILD)
            clock.advance(10)
            page = await get_validated_leaderboard(seeded, cache, guild)
            return page, await cache.get_cached_validated_users(GUILD)

        page, cached = run_async(_inner())
        assert len(page.users) == 3
        assert cached is None

    def test_departed_member_rows_removed_everywhere(self, seeded, cache):
        xp_store.add_daily_xp(seeded, 2, GUILD, date(2026, 7, 15), 50, XPSource.MESSAGE, daily_cap=15000)
        xp_store.set_voice_session(seeded, 2, GUILD, 50, datetime(2026, 7, 15, 12, tzinfo=UTC))
        guild = make_guild({1: "ada", 3: "cy"})

        run_async(get_validated_leaderboard(seeded, cache, guild))
        assert xp_store.get_user_xp(seeded, 2, GUILD) is None
        assert xp_store.get_daily_xp(seeded, 2, GUILD, date(2026, 7, 15)) is None
        assert xp_store.get_voice_session(seeded, 2, GUILD) is None


class TestUnresolvedMembers:
    def _slow_guild(self, present: dict[int, str]):
        async def slow(user_id):
            await asyncio.sleep(10)

        members = {uid: SimpleNamespace(id=uid, bot=False, display_name=n) for uid, n in present.items()}
        return SimpleNamespace(id=GUILD, get_member=members.get, fetch_member=slow)

    def test_fetch_timeout_keeps_lifetime_xp(self, seeded, cache):
        guild = self._slow_guild({1: "ada", 3: "cy"})
        page = run_async(get_validated_leaderboard(seeded, cache, guild, timeout=0.05))

        assert page.unresolved == [2]
        assert page.removed == []
        assert [u["user_id"] for u in page.users] == [1, 3]
        assert xp_store.get_user_xp(seeded, 2, GUILD).total_xp == 200

    def test_unverified_page_not_cached(self, seeded, cache):
        guild = self._slow_guild({1: "ada", 3: "cy"})
        run_async(get_validated_leaderboard(seeded, cache, guild, timeout=0.05))
        assert run_async(cache.get_cached_validated_users(GUILD)) is None

    def test_http_failure_keeps_row_and_prunes_only_not_found(self, seeded, cache):
        error = discord.HTTPException(MagicMock(status=500, reason="Server Error"), "oops")

        async def fetch_member(user_id):
            if user_id == 2:
                raise error
            raise not_found()

        guild = SimpleNamespace(
            id=GUILD,
            get_member={1: SimpleNamespace(id=1, bot=False, display_name="ada")}.get,
            fetch_member=fetch_member,
        )
        page = run_async(get_validated_leaderboard(seeded, cache, guild))

        assert page.unresolved == [2]
        assert page.removed == [3]
        assert xp_store.get_user_xp(seeded, 2, GUILD) is not None
        assert xp_store.get_user_xp(seeded, 3, GUILD) is None
