"""
Tests for the Redis client module.

Basic command passthrough is exercised through the cache tests. These tests
cover the failure handling that is our own logic: errors become misses, and a
failure starts a cooldown during which Redis is not contacted at all.
"""
from unittest.mock import AsyncMock

from redis.exceptions import RedisError

from core.redis import RedisClient, get_redis_client, set_redis_client


class TestRedisFallback:
    """Errors never escape; they become None / False / 0."""

    async def test__get__returns_none_on_error(self, redis_client: RedisClient, fake_redis) -> None:
        """A failing GET is a miss."""
        fake_redis.fail = True
        assert await redis_client.get("k") is None

    async def test__setex__returns_false_on_error(self, redis_client: RedisClient, fake_redis) -> None:
        """A failing SETEX reports not written."""
        fake_redis.fail = True
        assert await redis_client.setex("k", 10, "v") is False

    async def test__delete_pattern__returns_zero_on_error(
        self, redis_client: RedisClient, fake_redis,
    ) -> None:
        """A failing SCAN deletes nothing."""
        await redis_client.setex("a:1", 10, "v")
        fake_redis.fail = True
        assert await redis_client.delete_pattern("a:*") == 0

    async def test__redis_error__from_library_is_caught(self, redis_client: RedisClient) -> None:
        """Any RedisError subclass is handled, not just connection errors."""
        redis_client._client = AsyncMock()
        redis_client._client.get.side_effect = RedisError("boom")
        assert await redis_client.get("k") is None
        assert redis_client.failure_count == 1

    async def test__disabled_client__is_not_connected(self) -> None:
        """A disabled client never connects and answers every command as unavailable."""
        client = RedisClient(url="redis://test", enabled=False)
        await client.connect()
        assert client.is_connected is False
        assert await client.get("k") is None
        assert await client.ping() is False


class TestRedisCooldown:
    """Cooldown after failures."""

    async def test__failure__skips_redis_during_cooldown(
        self, redis_client: RedisClient, fake_redis, monotonic,
    ) -> None:
        """After a failure no command reaches Redis until the cooldown passes."""
        fake_redis.fail = True
        await redis_client.get("k")
        calls_after_failure = fake_redis.calls

        fake_redis.fail = False
        monotonic.advance(29)
        assert await redis_client.get("k") is None
        assert fake_redis.calls == calls_after_failure
        assert redis_client.is_connected is False

        monotonic.advance(2)
        await redis_client.setex("k", 10, "v")
        assert await redis_client.get("k") == b"v"
        assert redis_client.is_connected is True

    async def test__cooldown__grows_with_consecutive_failures_up_to_cap(
        self, redis_client: RedisClient, fake_redis, monotonic,
    ) -> None:
        """Cooldown is base times failures, capped at the maximum."""
        fake_redis.fail = True
        await redis_client.get("k")
        assert redis_client.cooldown_remaining == 30

        for expected in (60, 90, 120, 150, 150):
            monotonic.advance(redis_client.cooldown_remaining)
            await redis_client.get("k")
            assert redis_client.cooldown_remaining == expected

    async def test__success__resets_failure_count(
        self, redis_client: RedisClient, fake_redis, monotonic,
    ) -> None:
        """The first successful command clears the failure streak."""
        fake_redis.fail = True
        await redis_client.get("k")
        await redis_client.get("k")  # skipped, still cooling down
        assert redis_client.failure_count == 1

        fake_redis.fail = False
        monotonic.advance(30)
        assert await redis_client.ping() is True
        assert redis_client.failure_count == 0
        assert redis_client.cooldown_remaining == 0


class TestRedisPatternCommands:
    """SCAN-based pattern commands."""

    async def test__delete_pattern__removes_only_matching_keys(self, redis_client: RedisClient) -> None:
        """Only keys matching the glob are deleted."""
        await redis_client.setex("session:a", 10, "1")
        await redis_client.setex("session:b", 10, "1")
        await redis_client.setex("profile_exists:a", 10, "1")

        assert await redis_client.delete_pattern("session:*") == 2
        assert await redis_client.scan_keys("*") == ["profile_exists:a"]


class TestGlobalRedisClient:
    """Process-wide client accessor."""

    def test__set_redis_client__round_trips(self, redis_client: RedisClient) -> None:
        """The lifespan sets the client; shutdown clears it."""
        set_redis_client(redis_client)
        try:
            assert get_redis_client() is redis_client
        finally:
            set_redis_client(None)
        assert get_redis_client() is None
