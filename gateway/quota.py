"""Per-requester daily quota.

Each requester has a budget of admitted requests per UTC calendar day,
set by their subscription tier. The window is encoded in the counter key,
so a new day starts from zero without any reset step. The check and the
increment are one atomic store operation, which keeps concurrent
admissions for the same requester from overshooting the limit.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog

from gateway.exceptions import QuotaExceededError
from gateway.interfaces import CounterStore
from gateway.observability.metrics import QUOTA_DECISIONS
from gateway.settings import UNLIMITED

logger = structlog.get_logger(__name__)

# Counters outlive their day slightly so a late read still sees the count
_EXPIRY_GRACE_SECONDS = 3600


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QuotaState:
    """A requester's position in the current window."""

    requester_id: str
    tier: str
    window_start: date
    used_in_window: int
    limit: int

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> Optional[int]:
        """Requests left today; None when the tier is unlimited."""
        if self.unlimited:
            return None
        return max(0, self.limit - self.used_in_window)


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of an admission check."""

    allowed: bool
    tier: str
    limit: int
    reset_at: Optional[datetime] = None  # Set on denial


class QuotaGate:
    """Admits or denies requests against tier daily limits.

    Example:
        gate = QuotaGate(InMemoryCounterStore(), {"free": 20, "enterprise": -1})
        decision = await gate.admit("user-1", "free")
        if not decision.allowed:
            print(f"Retry after {decision.reset_at}")
    """

    def __init__(
        self,
        store: CounterStore,
        limits: dict[str, int],
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._limits = {tier.lower(): limit for tier, limit in limits.items()}
        self._clock = clock

    def limit_for(self, tier: str) -> int:
        """Daily limit for ``tier``; unknown tiers get the free tier's limit."""
        return self._limits.get(tier.lower(), self._limits.get("free", 0))

    def _today(self) -> date:
        return self._clock().astimezone(timezone.utc).date()

    def _key(self, requester_id: str, day: date) -> str:
        return f"quota:{requester_id}:{day.isoformat()}"

    def next_reset(self) -> datetime:
        """Start of the next window (next UTC midnight)."""
        tomorrow = self._today() + timedelta(days=1)
        return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=timezone.utc)

    async def admit(self, requester_id: str, tier: str) -> QuotaDecision:
        """Count one request against the requester's budget if any is left."""
        limit = self.limit_for(tier)
        if limit == UNLIMITED:
            QUOTA_DECISIONS.labels(tier=tier, decision="allowed").inc()
            return QuotaDecision(allowed=True, tier=tier, limit=limit)

        reset_at = self.next_reset()
        ttl_seconds = int((reset_at - self._clock()).total_seconds()) + _EXPIRY_GRACE_SECONDS
        key = self._key(requester_id, self._today())

        admitted = await self._store.increment_if_below(key, limit, ttl_seconds)
        if admitted:
            QUOTA_DECISIONS.labels(tier=tier, decision="allowed").inc()
            return QuotaDecision(allowed=True, tier=tier, limit=limit)

        QUOTA_DECISIONS.labels(tier=tier, decision="denied").inc()
        logger.info(
            "Quota exceeded",
            requester_id=requester_id,
            tier=tier,
            limit=limit,
            reset_at=reset_at.isoformat(),
        )
        return QuotaDecision(allowed=False, tier=tier, limit=limit, reset_at=reset_at)

    async def check_or_raise(self, requester_id: str, tier: str) -> None:
        """Admit one request.

        Raises:
            QuotaExceededError: If the requester has no budget left today.
        """
        decision = await self.admit(requester_id, tier)
        if not decision.allowed:
            raise QuotaExceededError(
                requester_id=requester_id,
                tier=tier,
                limit=decision.limit,
                reset_at=decision.reset_at or self.next_reset(),
            )

    async def get_state(self, requester_id: str, tier: str) -> QuotaState:
        """Current window usage for a requester. Does not count a request."""
        today = self._today()
        used = await self._store.get(self._key(requester_id, today))
        return QuotaState(
            requester_id=requester_id,
            tier=tier,
            window_start=today,
            used_in_window=used,
            limit=self.limit_for(tier),
        )

    async def remaining(self, requester_id: str, tier: str) -> Optional[int]:
        """Requests left today; None when the tier is unlimited."""
        return (await self.get_state(requester_id, tier)).remaining


class InMemoryCounterStore:
    """Process-local CounterStore; a lock makes check-and-increment atomic."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._counters: dict[str, tuple[int, float]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _live_value(self, key: str) -> int:
        entry = self._counters.get(key)
        if entry is None:
            return 0
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._counters[key]
            return 0
        return value

    async def increment_if_below(self, key: str, limit: int, ttl_seconds: int) -> bool:
        async with self._lock:
            value = self._live_value(key)
            if value >= limit:
                return False
            if value == 0:
                self._counters[key] = (1, self._clock() + ttl_seconds)
            else:
                self._counters[key] = (value + 1, self._counters[key][1])
            return True

    async def get(self, key: str) -> int:
        async with self._lock:
            return self._live_value(key)


# KEYS[1] = counter key; ARGV[1] = limit; ARGV[2] = ttl seconds
_INCREMENT_IF_BELOW = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= tonumber(ARGV[1]) then
    return 0
end
current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 1
"""


class RedisCounterStore:
    """CounterStore backed by Redis; the check-and-increment runs as one Lua script."""

    def __init__(self, client: Any):
        self._client = client
        self._script = client.register_script(_INCREMENT_IF_BELOW)

    @classmethod
    def from_url(cls, redis_url: str) -> RedisCounterStore:
        import redis.asyncio as aioredis

        return cls(aioredis.from_url(redis_url, decode_responses=True))

    async def increment_if_below(self, key: str, limit: int, ttl_seconds: int) -> bool:
        result = await self._script(keys=[key], args=[limit, ttl_seconds])
        return int(result) == 1

    async def get(self, key: str) -> int:
        value = await self._client.get(key)
        return int(value) if value is not None else 0

    async def close(self) -> None:
        await self._client.aclose()
