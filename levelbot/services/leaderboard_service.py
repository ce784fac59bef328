"""
levelbot.services.leaderboard_service — Validated Leaderboards
===============================================================

The stored leaderboard can contain members who have since left the guild.
:func:`get_validated_leaderboard` checks each candidate against the guild
and sorts them three ways:

* present: kept, ranked in order;
* departed: Discord answered ``NotFound``; their rows are deleted when
  pruning is on;
* unresolved: the lookup timed out or failed.  Left out of this page but
  never deleted, and the page is not cached so the next read retries them.

The surviving list is cached through
:meth:`CacheLayer.safe_write_validated_users` so a concurrent guild
invalidation is never overwritten by this (now stale) result.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

import discord
from sqlalchemy import Engine

from levelbot.database.engine import run_db
from levelbot.engine.cache import CacheLayer
from levelbot.services import xp_store

logger = logging.getLogger(__name__)

MEMBER_FETCH_TIMEOUT = 5.0


class MemberLookupError(Exception):
    """Discord could not say whether a member is still in the guild."""


@dataclass
class LeaderboardPage:
    users: list[dict[str, Any]]
    from_cache: bool = False
    removed: list[int] = field(default_factory=list)
    unresolved: list[int] = field(default_factory=list)


async def resolve_member(guild: Any, user_id: int, timeout: float = MEMBER_FETCH_TIMEOUT) -> Any | None:
    """Cached member, else a REST fetch raced against *timeout*.

    Returns ``None`` only when Discord reports the member gone.  A timeout
    or any other HTTP failure raises :class:`MemberLookupError`.
    """
    member = guild.get_member(user_id)
    if member is not None:
        return member
    try:
        return await asyncio.wait_for(guild.fetch_member(user_id), timeout=timeout)
    except discord.NotFound:
        return None
    except (discord.HTTPException, asyncio.TimeoutError) as exc:
        logger.debug("Member lookup for %s in guild %s failed: %r", user_id, guild.id, exc)
        raise MemberLookupError(user_id) from exc


async def get_validated_leaderboard(
    engine: Engine,
    cache: CacheLayer,
    guild: Any,
    *,
    limit: int = 50,
    prune_departed: bool = True,
    timeout: float = MEMBER_FETCH_TIMEOUT,
) -> LeaderboardPage:
    """Top *limit* members of *guild* who are still present.

    A fresh cached list is returned as-is.  Otherwise each stored row is
    checked with :func:`resolve_member`; departed members are deleted when
    *prune_departed* is set.
    """
    cached = await cache.get_cached_validated_users(guild.id)
    if cached is not None:
        return LeaderboardPage(users=cached[:limit], from_cache=True)

    records = await run_db(xp_store.get_leaderboard, engine, guild.id, limit)
    lookups = await asyncio.gather(
        *(resolve_member(guild, r.user_id, timeout) for r in records),
        return_exceptions=True,
    )

    users: list[dict[str, Any]] = []
    departed: list[int] = []
    unresolved: list[int] = []
    for record, member in zip(records, lookups):
        if isinstance(member, MemberLookupError):
            unresolved.append(record.user_id)
            continue
        if isinstance(member, BaseException):
            raise member
        if member is None or getattr(member, "bot", False):
            departed.append(record.user_id)
            continue
        users.append(
            {
                **asdict(record),
                "rank": len(users) + 1,
                "display_name": getattr(member, "display_name", str(record.user_id)),
            }
        )

    if departed and prune_departed:
        removed = await run_db(xp_store.remove_users, engine, guild.id, departed)
        logger.info("Removed %d departed members from guild %s leaderboard", removed, guild.id)

    if unresolved:
        logger.warning(
            "Could not verify %d leaderboard members in guild %s; not caching this page",
            len(unresolved),
            guild.id,
        )
    else:
        await cache.safe_write_validated_users(guild.id, users)
    return LeaderboardPage(users=users, removed=departed, unresolved=unresolved)
