"""Unit tests for the response cache."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from gateway.cache import InMemoryCacheStore, RedisCacheStore, ResponseCache, make_cache_key
from gateway.models import ChatTurn, CompletionResult


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryCacheStore:
    return InMemoryCacheStore(clock=clock)


@pytest.fixture
def result() -> CompletionResult:
    return CompletionResult(
        content="Paris",
        prompt_tokens=12,
        completion_tokens=1,
        total_tokens=13,
        finish_reason="stop",
        backend_used="openai",
        model_used="gpt-4",
    )


class TestCacheKey:
    """Test cache key derivation."""

    def test_stable(self):
        """Test the same input always yields the same key."""
        turns = [ChatTurn(role="user", content="Capital of France?")]
        assert make_cache_key("gpt-4", turns) == make_cache_key("gpt-4", turns)

    def test_whitespace_normalized(self):
        """Test surrounding whitespace does not change the key."""
        a = [ChatTurn(role="user", content="Capital of France?")]
        b = [ChatTurn(role="user", content="  Capital of France?\n")]
        assert make_cache_key("gpt-4", a) == make_cache_key("gpt-4", b)

    def test_model_matters(self):
        """Test different models never share an entry."""
        turns = [ChatTurn(role="user", content="hi")]
        assert make_cache_key("gpt-4", turns) != make_cache_key("gpt-4o", turns)

    def test_role_matters(self):
        """Test the same text under a different role is a different key."""
        a = [ChatTurn(role="user", content="hi")]
        b = [ChatTurn(role="system", content="hi")]
        assert make_cache_key("gpt-4", a) != make_cache_key("gpt-4", b)

    def test_turn_boundaries_matter(self):
        """Test turn boundaries are part of the key."""
        a = [ChatTurn(role="user", content="a b")]
        b = [ChatTurn(role="user", content="a"), ChatTurn(role="user", content="b")]
        assert make_cache_key("gpt-4", a) != make_cache_key("gpt-4", b)


class TestInMemoryCacheStore:
    """Test the in-memory store."""

    async def test_set_get(self, store):
        """Test stored values are returned."""
        await store.set("k", "v", ttl_seconds=60)
        assert await store.get("k") == "v"

    async def test_expiry(self, store, clock):
        """Test expired entries read as absent and are removed."""
        await store.set("k", "v", ttl_seconds=60)
        clock.now += 60
        assert await store.get("k") is None
        assert len(store) == 0

    async def test_delete(self, store):
        """Test deleting a key."""
        await store.set("k", "v", ttl_seconds=60)
        await store.delete("k")
        assert await store.get("k") is None

    async def test_sweep(self, store, clock):
        """Test the sweep drops only expired entries."""
        await store.set("old", "v", ttl_seconds=10)
        await store.set("new", "v", ttl_seconds=100)
        clock.now += 50
        assert store.sweep() == 1
        assert await store.get("new") == "v"

    async def test_start_stop(self, store):
        """Test the sweep task starts and stops cleanly."""
        await store.start()
        await store.stop()


class TestResponseCache:
    """Test the best-effort cache wrapper."""

    async def test_round_trip(self, store, result):
        """Test a stored result comes back unchanged."""
        cache = ResponseCache(store, ttl_seconds=300)
        await cache.set("key", result)
        assert await cache.get("key") == result

    async def test_miss(self, store):
        """Test an absent key is a miss."""
        assert await ResponseCache(store).get("missing") is None

    async def test_ttl_applied(self, store, clock, result):
        """Test entries expire after the cache TTL."""
        cache = ResponseCache(store, ttl_seconds=300)
        await cache.set("key", result)
        clock.now += 299
        assert await cache.get("key") == result
        clock.now += 1
        assert await cache.get("key") is None

    async def test_get_error_is_miss(self, result):
        """Test a failing store reads as a miss."""
        failing = AsyncMock()
        failing.get.side_effect = ConnectionError("redis down")
        assert await ResponseCache(failing).get("key") is None

    async def test_set_error_swallowed(self, result):
        """Test a failing store write does not raise."""
        failing = AsyncMock()
        failing.set.side_effect = ConnectionError("redis down")
        await ResponseCache(failing).set("key", result)

    async def test_delete_error_swallowed(self):
        """Test a failing store delete does not raise."""
        failing = AsyncMock()
        failing.delete.side_effect = ConnectionError("redis down")
        await ResponseCache(failing).delete("key")

    async def test_corrupt_entry_is_miss(self, store):
        """Test an undecodable entry reads as a miss."""
        await store.set("key", "{not json", ttl_seconds=60)
        assert await ResponseCache(store).get("key") is None


class TestRedisCacheStore:
    """Test the Redis store against a mocked client."""

    async def test_set_uses_expiry(self):
        """Test values are written with an expiry."""
        client = AsyncMock()
        await RedisCacheStore(client).set("k", "v", ttl_seconds=300)
        client.set.assert_awaited_once_with("k", "v", ex=300)

    async def test_get(self):
        """Test reads go to the client."""
        client = AsyncMock()
        client.get.return_value = "v"
        assert await RedisCacheStore(client).get("k") == "v"

    async def test_delete(self):
        """Test deletes go to the client."""
        client = AsyncMock()
        await RedisCacheStore(client).delete("k")
        client.delete.assert_awaited_once_with("k")
