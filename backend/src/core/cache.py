"""
Two-tier key/value cache: Redis first, in-process memory as fallback.

Values are stored JSON-encoded in both tiers so a value read from either tier has
the same shape. ``None`` is a legal cached value; absence is reported with the
``CACHE_MISS`` sentinel.
"""
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from core.redis import RedisClient

logger = logging.getLogger(__name__)


class _CacheMiss:
    """Sentinel type for "key absent" (distinct from a cached ``None``)."""

    _instance: "_CacheMiss | None" = None

    def __new__(cls) -> "_CacheMiss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "CACHE_MISS"


CACHE_MISS: Any = _CacheMiss()


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_value(value: Any) -> str:
    """Serialize a value for either cache tier."""
    return json.dumps(value, default=_json_default, separators=(",", ":"))


def decode_value(raw: str | bytes) -> Any:
    """Inverse of ``encode_value``."""
    return json.loads(raw)


@dataclass
class _LocalEntry:
    value: Any
    expires_at: float


class LocalCache:
    """
    In-process TTL map.

    An entry is served only while its own expiry has not passed. Expired entries
    are dropped lazily on read and in bulk every ``purge_every`` writes; there is
    no size-based eviction.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        purge_every: int = 100,
    ) -> None:
        self._entries: dict[str, _LocalEntry] = {}
        self._clock = clock
        self._purge_every = purge_every
        self._writes = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any:
        """Return the live value for ``key`` or ``CACHE_MISS``."""
        entry = self._entries.get(key)
        if entry is None:
            return CACHE_MISS
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return CACHE_MISS
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store ``value`` replacing any prior value and expiry."""
        self._entries[key] = _LocalEntry(value=value, expires_at=self._clock() + ttl_seconds)
        self._writes += 1
        if self._purge_every and self._writes % self._purge_every == 0:
            self.purge_expired()

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if it was present."""
        return self._entries.pop(key, None) is not None

    def keys(self, pattern: str | None = None) -> list[str]:
        """Resident keys, optionally filtered by a Redis-style glob pattern."""
        if pattern is None:
            return list(self._entries)
        return [key for key in self._entries if fnmatchcase(key, pattern)]

    def delete_pattern(self, pattern: str) -> int:
        """Linear glob match over resident keys; returns the number removed."""
        matched = self.keys(pattern)
        for key in matched:
            del self._entries[key]
        return len(matched)

    def purge_expired(self) -> int:
        """Drop every entry whose expiry has passed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("local_cache_purge removed=%d size=%d", len(expired), len(self._entries))
        return len(expired)

    def clear(self) -> None:
        """Drop everything."""
        self._entries.clear()


class TieredCache:
    """
    Key/value cache with a shared Redis tier and a local fallback tier.

    - ``get`` consults Redis first, then the local tier on Redis miss or error.
    - ``set`` writes Redis and ALWAYS the local tier too, so a Redis failure right
      after a write still serves the value from memory.
    - ``delete`` / ``delete_pattern`` remove from both tiers and never raise.
    - Keys written or deleted while Redis is unavailable are remembered as
      unsynced. Reads skip Redis for them (its copy predates the change) and the
      first command after recovery deletes them from Redis.

    Every operation is best-effort: callers must be correct with an empty cache.
    The key space is subject-agnostic; callers choose prefixes such as
    ``session`` or ``oauth:token``.
    """

    DEFAULT_TTL = 300  # 5 minutes

    def __init__(
        self,
        redis_client: "RedisClient | None" = None,
        local: LocalCache | None = None,
        default_ttl: int = DEFAULT_TTL,
    ) -> None:
        self._redis = redis_client
        self._local = local if local is not None else LocalCache()
        self._default_ttl = default_ttl
        self._unsynced: set[str] = set()
        self._unsynced_patterns: set[str] = set()

    @staticmethod
    def build_key(key: str, prefix: str | None = None) -> str:
        """Join an optional prefix and a key as ``prefix:key``."""
        return f"{prefix}:{key}" if prefix else key

    @property
    def local(self) -> LocalCache:
        """The in-process tier."""
        return self._local

    async def get(self, key: str, prefix: str | None = None) -> Any:
        """
        Get a cached value.

        Returns:
            The decoded value (possibly ``None``) or ``CACHE_MISS``.
        """
        cache_key = self.build_key(key, prefix)
        if self._redis is not None and not await self._is_unsynced(cache_key):
            raw = await self._redis.get(cache_key)
            if raw is not None:
                try:
                    return decode_value(raw)
                except ValueError:
                    logger.warning("cache_decode_failed key=%s tier=redis", cache_key)

        raw_local = self._local.get(cache_key)
        if raw_local is CACHE_MISS:
            return CACHE_MISS
        return decode_value(raw_local)

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | float | None = None,
        prefix: str | None = None,
    ) -> None:
        """Write-through to Redis and always to the local tier."""
        cache_key = self.build_key(key, prefix)
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            await self.delete(cache_key)
            return
        try:
            encoded = encode_value(value)
        except TypeError as e:
            logger.warning("cache_encode_failed key=%s: %s", cache_key, e)
            return

        if self._redis is not None:
            await self._resync()
            if await self._redis.setex(cache_key, max(1, int(ttl)), encoded):
                self._unsynced.discard(cache_key)
            else:
                self._mark_unsynced(cache_key)
        self._local.set(cache_key, encoded, ttl)

    async def delete(self, key: str, prefix: str | None = None) -> None:
        """Remove a key from both tiers."""
        cache_key = self.build_key(key, prefix)
        if self._redis is not None:
            await self._resync()
            if not await self._redis.delete(cache_key):
                self._mark_unsynced(cache_key)
        self._local.delete(cache_key)

    async def delete_pattern(self, pattern: str) -> int:
        """
        Remove every key matching a glob pattern from both tiers.

        Returns:
            Number of keys removed across both tiers.
        """
        deleted = 0
        if self._redis is not None:
            await self._resync()
            deleted += await self._redis.delete_pattern(pattern)
            if not self._redis.is_connected and self._redis.enabled:
                self._unsynced_patterns.add(pattern)
        deleted += self._local.delete_pattern(pattern)
        if deleted:
            logger.debug("cache_delete_pattern pattern=%s deleted=%d", pattern, deleted)
        return deleted

    async def flush(self, prefix: str | None = None) -> int:
        """Clear one prefix (``prefix:*``) or, without a prefix, the local tier only."""
        if prefix:
            return await self.delete_pattern(f"{prefix}:*")
        count = len(self._local)
        self._local.clear()
        return count

    async def sweep(self, pattern: str, predicate: Callable[[Any], bool]) -> int:
        """
        Delete entries matching ``pattern`` whose decoded value satisfies ``predicate``.

        Used for record-level expiry that is independent of the entry TTL.
        """
        self._local.purge_expired()
        keys = set(self._local.keys(pattern))
        if self._redis is not None:
            keys.update(await self._redis.scan_keys(pattern) or [])

        removed = 0
        for key in keys:
            value = await self.get(key)
            if value is CACHE_MISS:
                continue
            try:
                stale = predicate(value)
            except (KeyError, TypeError, ValueError):
                stale = True
            if stale:
                await self.delete(key)
                removed += 1
        return removed

    def _mark_unsynced(self, cache_key: str) -> None:
        if self._redis is not None and self._redis.enabled:
            self._unsynced.add(cache_key)

    async def _is_unsynced(self, cache_key: str) -> bool:
        await self._resync()
        if cache_key in self._unsynced:
            return True
        return any(fnmatchcase(cache_key, pattern) for pattern in self._unsynced_patterns)

    async def _resync(self) -> None:
        """Delete from Redis every key that changed locally while it was unavailable."""
        if self._redis is None or not self._redis.is_connected:
            return
        if not (self._unsynced or self._unsynced_patterns):
            return
        keys = list(self._unsynced)
        if keys and not await self._redis.delete(*keys):
            return
        self._unsynced.difference_update(keys)
        for pattern in list(self._unsynced_patterns):
            await self._redis.delete_pattern(pattern)
            if not self._redis.is_connected:
                return
            self._unsynced_patterns.discard(pattern)
        logger.info("cache_resynced keys=%d", len(keys))

    def get_stats(self) -> dict[str, Any]:
        """Connectivity and size figures for diagnostics."""
        redis_stats: dict[str, Any] | None = None
        if self._redis is not None and self._redis.enabled:
            redis_stats = {
                "connected": self._redis.is_connected,
                "failure_count": self._redis.failure_count,
                "cooldown_remaining": round(self._redis.cooldown_remaining, 1),
                "unsynced": len(self._unsynced) + len(self._unsynced_patterns),
            }
        return {
            "redis": redis_stats,
            "local": {
                "size": len(self._local),
                "keys": self._local.keys()[:10],
            },
        }

    def clear(self) -> None:
        """Reset the in-process tier (tests and shutdown)."""
        self._local.clear()


# Global cache instance (set during app startup) for callers outside the auth core
class _CacheState:
    """Container for the process-wide tiered cache."""

    cache: TieredCache | None = None


_state = _CacheState()


def get_tiered_cache() -> TieredCache | None:
    """Get the global tiered cache instance."""
    return _state.cache


def set_tiered_cache(cache: TieredCache | None) -> None:
    """Set the global tiered cache instance."""
    _state.cache = cache
