"""Redis client with connection pooling, graceful fallback and failure cooldown."""
import logging
import time
from collections.abc import Callable

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

# Keys deleted per DEL command during pattern deletes
DELETE_BATCH_SIZE = 500


class RedisClient:
    """
    Async Redis client with connection pooling and graceful fallback.

    Every command swallows ``RedisError`` and reports "unavailable" to the caller
    (None / False / 0). A failed command also starts a cooldown during which no
    command is sent at all, so a dead Redis costs nothing on the request path.
    The cooldown grows linearly with consecutive failures up to
    ``max_cooldown_seconds`` and resets on the first successful command.
    """

    def __init__(
        self,
        url: str,
        enabled: bool = True,
        pool_size: int = 20,
        socket_timeout: float = 0.5,
        cooldown_seconds: float = 30.0,
        max_cooldown_seconds: float = 150.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url
        self._enabled = enabled
        self._pool_size = pool_size
        self._socket_timeout = socket_timeout
        self._cooldown_seconds = cooldown_seconds
        self._max_cooldown_seconds = max_cooldown_seconds
        self._clock = clock
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None
        self._failure_count = 0
        self._next_retry_at = 0.0

    async def connect(self) -> None:
        """
        Initialize connection pool and verify connectivity.

        A failed ping keeps the pool (the client retries after the cooldown)
        instead of disabling Redis for the lifetime of the process.
        """
        if not self._enabled:
            logger.info("Redis disabled by configuration, using in-memory cache only")
            return
        self._pool = ConnectionPool.from_url(
            self._url,
            max_connections=self._pool_size,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_timeout,
        )
        self._client = Redis(connection_pool=self._pool)
        if await self.ping():
            logger.info("Redis connected successfully")

    async def close(self) -> None:
        """Close connection pool."""
        if self._client:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning("Redis close failed: %s", e)
            self._client = None
            self._pool = None
            logger.info("Redis connection closed")

    @property
    def enabled(self) -> bool:
        """Whether Redis is configured at all."""
        return self._enabled

    @property
    def is_connected(self) -> bool:
        """Check if client exists and is not cooling down after a failure."""
        return self._available() is not None

    @property
    def failure_count(self) -> int:
        """Consecutive failed commands since the last success."""
        return self._failure_count

    @property
    def cooldown_remaining(self) -> float:
        """Seconds until Redis is tried again (0 when not cooling down)."""
        return max(0.0, self._next_retry_at - self._clock())

    def _available(self) -> Redis | None:
        if self._client is None:
            return None
        if self._clock() < self._next_retry_at:
            return None
        return self._client

    def _record_failure(self, operation: str, error: Exception) -> None:
        self._failure_count += 1
        cooldown = min(
            self._cooldown_seconds * self._failure_count,
            self._max_cooldown_seconds,
        )
        self._next_retry_at = self._clock() + cooldown
        logger.warning(
            "Redis %s failed, using in-memory cache for %.0fs (failures=%d): %s",
            operation,
            cooldown,
            self._failure_count,
            error,
        )

    def _record_success(self) -> None:
        if self._failure_count:
            logger.info("Redis recovered after %d failures", self._failure_count)
        self._failure_count = 0
        self._next_retry_at = 0.0

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        client = self._available()
        if client is None:
            return False
        try:
            result = await client.ping()
        except RedisError as e:
            self._record_failure("PING", e)
            return False
        self._record_success()
        return bool(result)

    async def get(self, key: str) -> bytes | None:
        """Get value, returns None if Redis unavailable."""
        client = self._available()
        if client is None:
            return None
        try:
            value = await client.get(key)
        except RedisError as e:
            self._record_failure("GET", e)
            return None
        self._record_success()
        return value

    async def setex(self, key: str, seconds: int, value: str | bytes) -> bool:
        """Set value with expiry, returns False if Redis unavailable."""
        client = self._available()
        if client is None:
            return False
        try:
            await client.setex(key, seconds, value)
        except RedisError as e:
            self._record_failure("SETEX", e)
            return False
        self._record_success()
        return True

    async def delete(self, *keys: str) -> bool:
        """Delete key(s), returns False if Redis unavailable."""
        client = self._available()
        if client is None or not keys:
            return False
        try:
            await client.delete(*keys)
        except RedisError as e:
            self._record_failure("DELETE", e)
            return False
        self._record_success()
        return True

    async def scan_keys(self, pattern: str) -> list[str] | None:
        """
        Collect keys matching a glob pattern with SCAN (never KEYS).

        Returns None if Redis unavailable.
        """
        client = self._available()
        if client is None:
            return None
        keys: list[str] = []
        try:
            async for key in client.scan_iter(match=pattern, count=DELETE_BATCH_SIZE):
                keys.append(key.decode() if isinstance(key, bytes) else key)
        except RedisError as e:
            self._record_failure("SCAN", e)
            return None
        self._record_success()
        return keys

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern. Returns 0 if Redis unavailable."""
        keys = await self.scan_keys(pattern)
        if not keys:
            return 0
        client = self._available()
        if client is None:
            return 0
        deleted = 0
        try:
            for start in range(0, len(keys), DELETE_BATCH_SIZE):
                deleted += await client.delete(*keys[start:start + DELETE_BATCH_SIZE])
        except RedisError as e:
            self._record_failure("DELETE (pattern)", e)
            return deleted
        self._record_success()
        return deleted

    async def flushdb(self) -> bool:
        """Flush current database (for testing). Returns False if unavailable."""
        client = self._available()
        if client is None:
            return False
        try:
            await client.flushdb()
        except RedisError as e:
            self._record_failure("FLUSHDB", e)
            return False
        self._record_success()
        return True


# Global Redis client state using a container to avoid global statement
class _RedisState:
    """Container for global Redis client state."""

    client: RedisClient | None = None


_state = _RedisState()


def get_redis_client() -> RedisClient | None:
    """Get the global Redis client instance."""
    return _state.client


def set_redis_client(client: RedisClient | None) -> None:
    """Set the global Redis client instance."""
    _state.client = client
