"""
levelbot.engine.cache — Redis Cache With In-Process Fallback
=============================================================

Every operation tries Redis first.  When no client is configured, or a
call raises a Redis/socket error, the same operation is served from a
:class:`MemoryStore` with manual expiry, and the degradation is logged once
per outage (recovery is logged too).  Callers never see the difference
beyond staleness.

All keys are namespaced with ``cache.key_prefix``.  JSON values are
serialized on the way in for both tiers so readers always receive a fresh
copy, never a reference to a cached object.

Validated-user lists carry a creation timestamp and a format version.
Readers reject entries older than ``validated_users_max_age`` even while
the backing TTL has not expired, and a guild-level invalidation writes a
short-lived tombstone that blocks re-population for
``invalidation_grace_seconds``.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from redis.asyncio.client import Redis as AsyncRedis
from redis.exceptions import RedisError

from levelbot.config import CacheConfig

logger = logging.getLogger(__name__)

VALIDATED_USERS_VERSION = 1

_PRIMARY_ERRORS = (RedisError, OSError, asyncio.TimeoutError)
_DELETE_BATCH = 500


# ---------------------------------------------------------------------------
# In-process fallback
# ---------------------------------------------------------------------------
class MemoryStore:
    """Dict-backed key/value store with per-key expiry.

    Expired keys are evicted lazily on read and in bulk by
    :meth:`purge_expired`.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: dict[str, Any] = {}
        self._expires: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._values)

    def _expired(self, key: str, now: float) -> bool:
        expires = self._expires.get(key)
        return expires is not None and now >= expires

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self._values[key] = value
        if ttl:
            self._expires[key] = self._clock() + ttl
        else:
            self._expires.pop(key, None)

    def get(self, key: str) -> Any | None:
        if key not in self._values:
            return None
        if self._expired(key, self._clock()):
            self.delete(key)
            return None
        return self._values[key]

    def delete(self, key: str) -> bool:
        self._expires.pop(key, None)
        return self._values.pop(key, None) is not None

    def keys(self, pattern: str = "*") -> list[str]:
        self.purge_expired()
        return [k for k in self._values if fnmatch.fnmatchcase(k, pattern)]

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [k for k in self._expires if self._expired(k, now)]
        for key in stale:
            self.delete(key)
        return len(stale)

    def clear(self) -> None:
        self._values.clear()
        self._expires.clear()


# ---------------------------------------------------------------------------
# Cache layer
# ---------------------------------------------------------------------------
class CacheLayer:
    """Namespaced cache over Redis with transparent in-process fallback.

    Parameters
    ----------
    client:
        A ``redis.asyncio`` client created with ``decode_responses=False``,
        or ``None`` to run on the fallback store only.
    config:
        TTLs, key prefix and the validated-users freshness rules.
    clock:
        Wall-clock source in epoch seconds.  Drives fallback expiry,
        validated-entry age and tombstone age.
    """

    def __init__(
        self,
        client: AsyncRedis | None = None,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self.config = config or CacheConfig()
        self._clock = clock
        self._memory = MemoryStore(clock)
        self._primary_ok = client is not None

    # -- lifecycle ----------------------------------------------------------
    @classmethod
    async def connect(
        cls,
        url: str | None,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> CacheLayer:
        """Create a cache backed by the Redis server at *url*.

        An unreachable server is not fatal: the layer starts in fallback
        mode and keeps retrying Redis on every call.
        """
        if not url:
            logger.warning("REDIS_URL not set; caching in process memory only")
            return cls(None, config, clock=clock)

        client = AsyncRedis.from_url(
            url,
            socket_timeout=5,
            socket_connect_timeout=5,
            decode_responses=False,
            max_connections=20,
            health_check_interval=30,
        )
        layer = cls(client, config, clock=clock)
        try:
            await client.ping()
            logger.info("Redis cache connected (prefix=%s)", layer.config.key_prefix)
        except _PRIMARY_ERRORS as exc:
            layer._mark_degraded("connect", url.split("@")[-1], exc)
        return layer

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except _PRIMARY_ERRORS:
                logger.debug("Error closing Redis client", exc_info=True)
        self._memory.clear()

    @property
    def primary_available(self) -> bool:
        return self._client is not None and self._primary_ok

    @property
    def memory(self) -> MemoryStore:
        return self._memory

    def key(self, key: str) -> str:
        return f"{self.config.key_prefix}{key}"

    # -- primary/fallback plumbing -----------------------------------------
    def _mark_degraded(self, op: str, key: str, exc: BaseException) -> None:
        if self._primary_ok:
            logger.warning(
                "Redis %s failed (%s); serving cache from process memory",
                op,
                exc,
                extra={"cache_op": op, "cache_key": key},
            )
        else:
            logger.debug("Redis %s failed for %s: %s", op, key, exc)
        self._primary_ok = False

    def _mark_recovered(self) -> None:
        if not self._primary_ok:
            logger.info("Redis cache recovered")
        self._primary_ok = True

    async def _primary(
        self, op: str, key: str, call: Callable[[AsyncRedis], Awaitable[Any]]
    ) -> tuple[bool, Any]:
        """Run *call* against Redis.  Returns ``(succeeded, result)``."""
        if self._client is None:
            return False, None
        try:
            result = await call(self._client)
        except _PRIMARY_ERRORS as exc:
            self._mark_degraded(op, key, exc)
            return False, None
        self._mark_recovered()
        return True, result

    def _ttl(self, ttl: float | None) -> int:
        return max(1, int(ttl if ttl is not None else self.config.default_ttl))

    @staticmethod
    def _decode(full_key: str, raw: Any) -> Any | None:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry %s", full_key)
            return None

    # -- basic operations ---------------------------------------------------
    async def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """Store a JSON-serializable *value* for *ttl* seconds."""
        full = self.key(key)
        seconds = self._ttl(ttl)
        payload = json.dumps(value, default=str)
        ok, _ = await self._primary("set", full, lambda r: r.set(full, payload, ex=seconds))
        if not ok:
            self._memory.set(full, payload, seconds)
        return True

    async def get(self, key: str) -> Any | None:
        full = self.key(key)
        ok, raw = await self._primary("get", full, lambda r: r.get(full))
        if not ok:
            raw = self._memory.get(full)
        return self._decode(full, raw)

    async def delete(self, key: str) -> bool:
        """Remove *key* from both tiers."""
        full = self.key(key)
        _, removed = await self._primary("delete", full, lambda r: r.delete(full))
        in_memory = self._memory.delete(full)
        return bool(removed) or in_memory

    async def set_binary(self, key: str, data: bytes, ttl: float | None = None) -> bool:
        full = self.key(key)
        seconds = self._ttl(ttl)
        ok, _ = await self._primary("set_binary", full, lambda r: r.set(full, data, ex=seconds))
        if not ok:
            self._memory.set(full, bytes(data), seconds)
        return True

    async def get_binary(self, key: str) -> bytes | None:
        full = self.key(key)
        ok, raw = await self._primary("get_binary", full, lambda r: r.get(full))
        if not ok:
            raw = self._memory.get(full)
        return bytes(raw) if raw is not None else None

    async def clear_by_pattern(self, pattern: str) -> int:
        """Delete every key matching the glob *pattern* (prefix applied)."""
        full = self.key(pattern)

        async def _scan_delete(r: AsyncRedis) -> int:
            batch: list[bytes] = []
            deleted = 0
            async for found in r.scan_iter(match=full, count=_DELETE_BATCH):
                batch.append(found)
                if len(batch) >= _DELETE_BATCH:
                    deleted += await r.delete(*batch)
                    batch.clear()
            if batch:
                deleted += await r.delete(*batch)
            return deleted

        _, deleted = await self._primary("clear_by_pattern", full, _scan_delete)
        memory_keys = self._memory.keys(full)
        for k in memory_keys:
            self._memory.delete(k)
        return (deleted or 0) + len(memory_keys)

    def purge_expired(self) -> int:
        """Evict expired fallback entries."""
        return self._memory.purge_expired()

    async def flush(self) -> int:
        """Delete every key under this bot's prefix."""
        removed = await self.clear_by_pattern("*")
        logger.info("Flushed %d cache entries", removed)
        return removed

    # -- validated users ----------------------------------------------------
    @staticmethod
    def _validated_key(guild_id: int) -> str:
        return f"validated_users:{guild_id}"

    @staticmethod
    def _tombstone_key(guild_id: int) -> str:
        return f"invalidated:{guild_id}"

    async def cache_validated_users(self, guild_id: int, users: list[dict]) -> bool:
        """Unconditionally store the validated member list for *guild_id*."""
        entry = {
            "version": VALIDATED_USERS_VERSION,
            "created_at": self._clock(),
            "users": users,
        }
        return await self.set(
            self._validated_key(guild_id), entry, ttl=self.config.validated_users_ttl
        )

    async def get_cached_validated_users(self, guild_id: int) -> list[dict] | None:
        """Return the cached list if it exists, matches the format version,
        and is younger than ``validated_users_max_age``; otherwise ``None``.
        """
        entry = await self.get(self._validated_key(guild_id))
        if not isinstance(entry, dict):
            return None
        if entry.get("version") != VALIDATED_USERS_VERSION:
            logger.debug("Ignoring validated users for %s: version mismatch", guild_id)
            return None
        try:
            age = self._clock() - float(entry["created_at"])
        except (KeyError, TypeError, ValueError):
            return None
        if age > self.config.validated_users_max_age:
            logger.debug("Validated users for %s are stale (%.0fs old)", guild_id, age)
            return None
        users = entry.get("users")
        return users if isinstance(users, list) else None

    async def safe_write_validated_users(self, guild_id: int, users: list[dict]) -> bool:
        """Write *users* unless that could resurrect data that was just invalidated.

        Skipped (returns ``False``) while an invalidation tombstone younger
        than the grace period exists, or when a fresh entry is already
        cached.
        """
        tombstone = await self.get(self._tombstone_key(guild_id))
        if tombstone is not None:
            try:
                age = self._clock() - float(tombstone)
            except (TypeError, ValueError):
                age = 0.0
            if age < self.config.invalidation_grace_seconds:
                logger.debug(
                    "Skipping validated-users write for %s: invalidated %.1fs ago",
                    guild_id,
                    age,
                )
                return False

        if await self.get_cached_validated_users(guild_id) is not None:
            return False

        return await self.cache_validated_users(guild_id, users)

    async def invalidate_guild_cache(self, guild_id: int) -> None:
        """Tombstone *guild_id* and drop its validated-user and leaderboard entries."""
        await self.set(
            self._tombstone_key(guild_id),
            self._clock(),
            ttl=self.config.invalidation_grace_seconds * 2,
        )
        await self.delete(self._validated_key(guild_id))
        await self.invalidate_guild_leaderboards(guild_id)
        logger.info("Invalidated cached member data for guild %s", guild_id)

    # -- typed helpers ------------------------------------------------------
    async def cache_leaderboard(
        self, guild_id: int, kind: str, limit: int, rows: list[dict]
    ) -> bool:
        return await self.set(
            f"leaderboard:{guild_id}:{kind}:{limit}", rows, ttl=self.config.leaderboard_ttl
        )

    async def get_cached_leaderboard(self, guild_id: int, kind: str, limit: int) -> list | None:
        return await self.get(f"leaderboard:{guild_id}:{kind}:{limit}")

    async def invalidate_guild_leaderboards(self, guild_id: int) -> int:
        return await self.clear_by_pattern(f"leaderboard:{guild_id}:*")

    async def cache_user_stats(self, guild_id: int, user_id: int, stats: dict) -> bool:
        return await self.set(f"stats:{guild_id}:{user_id}", stats, ttl=self.config.stats_ttl)

    async def get_cached_user_stats(self, guild_id: int, user_id: int) -> dict | None:
        return await self.get(f"stats:{guild_id}:{user_id}")

    async def invalidate_user_stats(self, guild_id: int, user_id: int) -> bool:
        return await self.delete(f"stats:{guild_id}:{user_id}")

    async def cache_daily_progress(
        self, guild_id: int, user_id: int, day: str, progress: dict, ttl: float
    ) -> bool:
        return await self.set(f"daily:{guild_id}:{user_id}:{day}", progress, ttl=ttl)

    async def get_cached_daily_progress(self, guild_id: int, user_id: int, day: str) -> dict | None:
        return await self.get(f"daily:{guild_id}:{user_id}:{day}")

    async def invalidate_user_daily_progress(self, guild_id: int, user_id: int) -> int:
        return await self.clear_by_pattern(f"daily:{guild_id}:{user_id}:*")

    async def clear_all_daily_progress(self) -> int:
        return await self.clear_by_pattern("daily:*")

    # -- introspection ------------------------------------------------------
    async def health_check(self) -> dict[str, Any]:
        """Ping Redis and report which tier is serving."""
        started = time.perf_counter()
        ok, _ = await self._primary("ping", "-", lambda r: r.ping())
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        if self._client is None:
            status = "memory-only"
        else:
            status = "ok" if ok else "degraded"
        return {
            "status": status,
            "primary_latency_ms": latency_ms if ok else None,
            "fallback_entries": len(self._memory),
        }

    async def get_cache_stats(self) -> dict[str, Any]:
        """Count cached keys per category across whichever tier is serving."""
        full = self.key("*")

        async def _scan(r: AsyncRedis) -> list[str]:
            return [
                k.decode() if isinstance(k, bytes) else k
                async for k in r.scan_iter(match=full, count=_DELETE_BATCH)
            ]

        ok, keys = await self._primary("stats", full, _scan)
        if not ok:
            keys = self._memory.keys(full)

        categories: dict[str, int] = {}
        prefix_len = len(self.config.key_prefix)
        for k in keys:
            category = k[prefix_len:].split(":", 1)[0]
            categories[category] = categories.get(category, 0) + 1

        return {
            "backend": "redis" if ok else "memory",
            "total_keys": len(keys),
            "categories": categories,
            "fallback_entries": len(self._memory),
        }

