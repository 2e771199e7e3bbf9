"""Completion gateway: the operation set offered to callers.

``create_gateway(settings)`` wires the registry, controller, quota gate,
response cache and usage recorder from settings. Callers hold one
CompletionGateway per process and call ``start()`` / ``stop()`` around
its lifetime.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

import structlog
from pydantic import ValidationError as PydanticValidationError

from gateway.cache import InMemoryCacheStore, RedisCacheStore, ResponseCache
from gateway.exceptions import ValidationError
from gateway.interfaces import CacheStore, CounterStore, ModerationOracle, UsageSink
from gateway.llm.catalog import list_models
from gateway.llm.failover import RetryFailoverController
from gateway.llm.health import HealthState
from gateway.llm.pricing import estimate_cost
from gateway.llm.registry import BackendRegistry
from gateway.llm.streaming import TokenStream
from gateway.llm.usage import InMemoryUsageSink, UsageRecorder
from gateway.models import (
    ChatTurn,
    CompletionRequest,
    CompletionResult,
    ModelOption,
    ModerationResult,
)
from gateway.quota import InMemoryCounterStore, QuotaGate, RedisCounterStore
from gateway.router import CompletionRouter
from gateway.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


def _build_request(
    turns: Sequence[Any], streaming: bool, options: dict[str, Any]
) -> CompletionRequest:
    try:
        return CompletionRequest.model_validate(
            {
                **options,
                "turns": tuple(
                    turn if isinstance(turn, ChatTurn) else ChatTurn.model_validate(turn)
                    for turn in turns
                ),
                "streaming": streaming,
            }
        )
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "request"
        raise ValidationError(field, first.get("msg", str(e))) from e


class CompletionGateway:
    """Multi-backend chat completion gateway.

    Example:
        gateway = create_gateway(get_settings())
        await gateway.start()
        result = await gateway.complete(
            [ChatTurn(role="user", content="Hello")],
            requester_id="user-1",
            tier="free",
        )
        print(result.content, result.backend_used)
        await gateway.stop()
    """

    def __init__(
        self,
        settings: Settings,
        registry: BackendRegistry,
        router: CompletionRouter,
        usage: Optional[UsageRecorder] = None,
        cache_store: Optional[CacheStore] = None,
        moderation: Optional[ModerationOracle] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.router = router
        self.usage = usage
        self._cache_store = cache_store
        self._moderation = moderation

    async def start(self) -> None:
        """Start background workers (usage delivery, cache sweep)."""
        if self.usage is not None:
            await self.usage.start()
        if isinstance(self._cache_store, InMemoryCacheStore):
            await self._cache_store.start()
        logger.info("Completion gateway started", backends=self.registry.list_configured())

    async def stop(self) -> None:
        """Deliver pending usage events and stop background workers."""
        if self.usage is not None:
            await self.usage.stop()
        if isinstance(self._cache_store, InMemoryCacheStore):
            await self._cache_store.stop()
        logger.info("Completion gateway stopped")

    async def complete(self, turns: Sequence[Any], **options: Any) -> CompletionResult:
        """Run a non-streaming completion.

        Args:
            turns: ChatTurns, or dicts with ``role`` and ``content``.
            **options: Any other CompletionRequest field (backend, model,
                temperature, max_output_tokens, cacheable, requester_id, tier).

        Raises:
            ValidationError: If the request is malformed.
            QuotaExceededError: If the requester has no budget left today.
            AllBackendsExhaustedError: If every backend failed.
        """
        request = _build_request(turns, streaming=False, options=options)
        result = await self.router.complete(request)
        if not isinstance(result, CompletionResult):
            raise TypeError(f"expected a CompletionResult, got {type(result).__name__}")
        return result

    async def complete_streaming(self, turns: Sequence[Any], **options: Any) -> TokenStream:
        """Open a streaming completion.

        Validation, quota and the first chunk are settled before this
        returns, so a request that cannot be served raises here rather than
        inside the stream. Streaming requests are never cached.
        """
        options.pop("cacheable", None)
        request = _build_request(turns, streaming=True, options=options)
        stream = await self.router.complete(request)
        if not isinstance(stream, TokenStream):
            raise TypeError(f"expected a TokenStream, got {type(stream).__name__}")
        return stream

    def list_available_models(self, tier: str) -> list[ModelOption]:
        """Models ``tier`` may use on backends that are configured and not unhealthy."""
        usable = [
            name
            for name in self.registry.list_configured()
            if self.registry.health.state(name) != HealthState.UNHEALTHY
        ]
        return [
            ModelOption(backend=entry.backend, model=entry.model, display_name=entry.display_name)
            for entry in list_models(tier=tier, backends=usable)
        ]

    def estimate_cost(
        self,
        backend: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> float:
        """Estimated USD cost of a token usage.

        Raises:
            ValidationError: If a token count is negative.
        """
        try:
            return estimate_cost(backend, model, prompt_tokens, completion_tokens)
        except ValueError as e:
            raise ValidationError("tokens", str(e)) from e

    async def generate_embedding(self, text: str, model: Optional[str] = None) -> list[float]:
        """Embedding vector for ``text`` from an embedding-capable backend.

        ``model`` defaults to the ``embedding_model`` setting.

        Raises:
            ValidationError: If ``text`` is blank.
            AllBackendsExhaustedError: If no embedding-capable backend answered.
        """
        return await self.router.embed(text, model)

    async def moderate(self, text: str) -> ModerationResult:
        """Pass ``text`` to the moderation oracle; unflagged when none is set."""
        if self._moderation is None:
            return ModerationResult()
        return await self._moderation.moderate(text)


def create_gateway(
    settings: Optional[Settings] = None,
    usage_sink: Optional[UsageSink] = None,
    counter_store: Optional[CounterStore] = None,
    cache_store: Optional[CacheStore] = None,
    moderation: Optional[ModerationOracle] = None,
    registry: Optional[BackendRegistry] = None,
) -> CompletionGateway:
    """Build a gateway from settings.

    Stores not passed in are chosen by ``cache_backend`` / ``quota_backend``;
    the Redis variants need ``redis_url``.
    """
    settings = settings or get_settings()
    registry = registry or BackendRegistry(settings)

    if cache_store is None:
        if settings.cache_backend == "redis":
            if not settings.redis_url:
                raise ValueError("GATEWAY_REDIS_URL is required when cache_backend is 'redis'")
            cache_store = RedisCacheStore.from_url(settings.redis_url)
        else:
            cache_store = InMemoryCacheStore(
                sweep_interval_seconds=settings.cache_sweep_interval_seconds
            )

    if counter_store is None:
        if settings.quota_backend == "redis":
            if not settings.redis_url:
                raise ValueError("GATEWAY_REDIS_URL is required when quota_backend is 'redis'")
            counter_store = RedisCounterStore.from_url(settings.redis_url)
        else:
            counter_store = InMemoryCounterStore()

    usage = UsageRecorder(usage_sink or InMemoryUsageSink(), max_queue=settings.usage_queue_size)

    router = CompletionRouter(
        settings,
        RetryFailoverController(registry, settings),
        quota=QuotaGate(counter_store, settings.tier_daily_limits),
        cache=ResponseCache(cache_store, ttl_seconds=settings.cache_ttl_seconds),
        usage=usage,
    )

    return CompletionGateway(
        settings,
        registry,
        router,
        usage=usage,
        cache_store=cache_store,
        moderation=moderation,
    )
