"""Contracts the gateway consumes from external collaborators.

Persistence, counters, caching and moderation live outside the gateway.
These protocols are the only surface it relies on; in-memory and Redis
implementations ship alongside the components that use them.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from gateway.models import ModerationResult


@runtime_checkable
class UsageSink(Protocol):
    """Protocol for persisting token usage."""

    async def record_usage(
        self,
        requester_id: Optional[str],
        backend: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        cost: float,
        cached: bool = False,
    ) -> None:
        """Persist one usage event.

        Args:
            requester_id: Who made the request, if known.
            backend: Backend that served the request.
            model: Model that served the request.
            prompt_tokens: Prompt token count.
            completion_tokens: Completion token count.
            cost: Estimated cost in USD (zero for cache hits).
            cached: Whether the response came from the response cache.
        """
        ...


@runtime_checkable
class CounterStore(Protocol):
    """Protocol for atomic quota counters."""

    async def increment_if_below(self, key: str, limit: int, ttl_seconds: int) -> bool:
        """Atomically increment ``key`` if its current value is below ``limit``.

        Args:
            key: Counter key.
            limit: Exclusive upper bound for the value before incrementing.
            ttl_seconds: Expiry applied when the counter is created.

        Returns:
            True if the counter was incremented, False if it was at the limit.
        """
        ...

    async def get(self, key: str) -> int:
        """Current value of ``key`` (0 when absent or expired)."""
        ...


@runtime_checkable
class CacheStore(Protocol):
    """Protocol for a key/value store with expiry."""

    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if absent or expired."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""
        ...

    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""
        ...


@runtime_checkable
class ModerationOracle(Protocol):
    """Protocol for content moderation, consulted by gateway callers."""

    async def moderate(self, text: str) -> ModerationResult:
        """Classify ``text`` against the content policy."""
        ...
