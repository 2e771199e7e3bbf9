"""Response cache for non-streaming completions.

Entries are keyed by a hash of the model and the normalized conversation
and expire after a fixed TTL. The cache is best-effort: a store failure is
logged and reported as a miss, never raised to the completion path.

Two stores:
- In-memory dict with lazy expiry and an optional background sweep
- Redis, for sharing entries across processes
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from typing import Any, Callable, Optional, Sequence

import structlog
from pydantic import ValidationError as PydanticValidationError

from gateway.exceptions import CacheError
from gateway.interfaces import CacheStore
from gateway.models import ChatTurn, CompletionResult
from gateway.observability.metrics import CACHE_LOOKUPS

logger = structlog.get_logger(__name__)

KEY_PREFIX = "completion_cache"


def make_cache_key(model: str, turns: Sequence[ChatTurn]) -> str:
    """Stable key for a (model, conversation) pair.

    Turn content is stripped of surrounding whitespace before hashing, so
    requests that differ only in that whitespace share an entry.
    """
    raw = json.dumps(
        {
            "model": model.strip(),
            "turns": [[turn.role, turn.content.strip()] for turn in turns],
        },
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return f"{KEY_PREFIX}:{hashlib.sha256(raw.encode('utf-8')).hexdigest()}"


class ResponseCache:
    """Stores CompletionResults in a CacheStore.

    Example:
        cache = ResponseCache(InMemoryCacheStore(), ttl_seconds=300)
        key = make_cache_key("gpt-4", turns)
        if (result := await cache.get(key)) is None:
            result = await dispatch()
            await cache.set(key, result)
    """

    def __init__(self, store: CacheStore, ttl_seconds: int = 300):
        self._store = store
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def _log_error(self, operation: str, key: str, exc: Exception) -> None:
        error = CacheError(operation, str(exc))
        logger.warning("Response cache error", operation=operation, key=key[:32], error=error.message)

    async def get(self, key: str) -> Optional[CompletionResult]:
        """The cached result, or None on a miss or store failure."""
        try:
            raw = await self._store.get(key)
        except Exception as e:
            CACHE_LOOKUPS.labels(result="error").inc()
            self._log_error("get", key, e)
            return None

        if raw is None:
            CACHE_LOOKUPS.labels(result="miss").inc()
            logger.debug("Response cache miss", key=key[:32])
            return None

        try:
            result = CompletionResult.model_validate_json(raw)
        except PydanticValidationError as e:
            CACHE_LOOKUPS.labels(result="error").inc()
            self._log_error("decode", key, e)
            return None

        CACHE_LOOKUPS.labels(result="hit").inc()
        logger.debug("Response cache hit", key=key[:32], backend=result.backend_used)
        return result

    async def set(self, key: str, result: CompletionResult, ttl_seconds: Optional[int] = None) -> None:
        """Store ``result``; failures are logged and ignored."""
        try:
            await self._store.set(key, result.model_dump_json(), ttl_seconds or self._ttl_seconds)
        except Exception as e:
            self._log_error("set", key, e)

    async def delete(self, key: str) -> None:
        """Remove ``key``; failures are logged and ignored."""
        try:
            await self._store.delete(key)
        except Exception as e:
            self._log_error("delete", key, e)


class InMemoryCacheStore:
    """Process-local CacheStore.

    Expiry is checked on read. ``start()`` adds a periodic sweep that drops
    expired entries nobody reads again.
    """

    def __init__(
        self,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: dict[str, tuple[str, float]] = {}
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._sweep_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def start(self) -> None:
        """Start background sweep task."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop background sweep task."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug("Swept expired cache entries", removed=removed)


class RedisCacheStore:
    """CacheStore backed by Redis, shared across processes."""

    def __init__(self, client: Any):
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str) -> RedisCacheStore:
        import redis.asyncio as aioredis

        return cls(aioredis.from_url(redis_url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def close(self) -> None:
        await self._client.aclose()
