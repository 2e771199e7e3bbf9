"""Completion router: the request lifecycle.

validate -> quota -> cache lookup -> retry/failover -> cache store -> usage

Only validation errors, quota denials, exhausted-backend failures and
successful results leave the router. Cache and usage problems are handled
by their components and never reach the caller.
"""

from __future__ import annotations

from typing import Optional, Union

import structlog

from gateway.cache import ResponseCache, make_cache_key
from gateway.exceptions import ValidationError
from gateway.llm.failover import RetryFailoverController
from gateway.llm.pricing import estimate_cost
from gateway.llm.streaming import TokenStream
from gateway.llm.usage import UsageEvent, UsageRecorder
from gateway.models import CompletionRequest, CompletionResult
from gateway.quota import QuotaGate
from gateway.settings import Settings

logger = structlog.get_logger(__name__)

CompletionOutcome = Union[CompletionResult, TokenStream]


class CompletionRouter:
    """Drives one completion request through quota, cache and backends.

    Quota, cache and usage recording are optional so the router can run
    with only a controller in tests and scripts.
    """

    def __init__(
        self,
        settings: Settings,
        controller: RetryFailoverController,
        quota: Optional[QuotaGate] = None,
        cache: Optional[ResponseCache] = None,
        usage: Optional[UsageRecorder] = None,
    ) -> None:
        self._settings = settings
        self._controller = controller
        self._quota = quota
        self._cache = cache
        self._usage = usage

    def validate(self, request: CompletionRequest) -> CompletionRequest:
        """Check ``request`` and fill in defaults from settings.

        Raises:
            ValidationError: If the request is malformed.
        """
        if not request.turns:
            raise ValidationError("turns", "at least one turn is required")

        max_tokens = request.max_output_tokens
        if max_tokens is None:
            max_tokens = self._settings.default_max_output_tokens
        if max_tokens <= 0:
            raise ValidationError("max_output_tokens", f"must be positive, got {max_tokens}")
        if max_tokens > self._settings.max_output_tokens_limit:
            raise ValidationError(
                "max_output_tokens",
                f"must not exceed {self._settings.max_output_tokens_limit}, got {max_tokens}",
            )

        temperature = request.temperature
        if temperature is None:
            temperature = self._settings.default_temperature
        if not 0.0 <= temperature <= 2.0:
            raise ValidationError("temperature", f"must be between 0 and 2, got {temperature}")

        if request.requester_id is not None and not request.requester_id.strip():
            raise ValidationError("requester_id", "must not be blank")

        return request.model_copy(
            update={"max_output_tokens": max_tokens, "temperature": temperature}
        )

    def resolved_model(self, request: CompletionRequest) -> str:
        """Model the primary backend will be asked for."""
        backend = self._controller.primary_backend(request)
        return self._controller.model_for(backend, request)

    async def complete(self, request: CompletionRequest) -> CompletionOutcome:
        """Run ``request``.

        Returns:
            A CompletionResult, or a TokenStream when ``request.streaming``.

        Raises:
            ValidationError: If the request is malformed.
            QuotaExceededError: If the requester has no budget left today.
            AllBackendsExhaustedError: If every backend failed.
        """
        request = self.validate(request)

        if request.requester_id is not None and self._quota is not None:
            await self._quota.check_or_raise(request.requester_id, request.tier)

        if request.streaming:
            requester_id = request.requester_id
            return await self._controller.open_stream(
                request, on_finish=lambda stream: self._on_stream_finish(requester_id, stream)
            )

        cache_key: Optional[str] = None
        if request.cacheable and self._cache is not None:
            cache_key = make_cache_key(self.resolved_model(request), request.turns)
            cached = await self._cache.get(cache_key)
            if cached is not None:
                logger.info(
                    "Serving cached completion",
                    requester_id=request.requester_id,
                    backend=cached.backend_used,
                    model=cached.model_used,
                )
                self._record(request.requester_id, cached, cached=True)
                return cached

        result = await self._controller.dispatch(request)

        if cache_key is not None and self._cache is not None:
            await self._cache.set(cache_key, result)
        self._record(request.requester_id, result)

        logger.info(
            "Completion served",
            requester_id=request.requester_id,
            backend=result.backend_used,
            model=result.model_used,
            total_tokens=result.total_tokens,
        )
        return result

    async def embed(self, text: str, model: Optional[str] = None) -> list[float]:
        """Embedding vector for ``text``.

        Raises:
            ValidationError: If ``text`` is blank.
            AllBackendsExhaustedError: If no embedding-capable backend answered.
        """
        if not text or not text.strip():
            raise ValidationError("text", "must not be blank")
        vector = await self._controller.embed(text, model)
        logger.info(
            "Embedding served",
            model=model or self._settings.embedding_model,
            dimensions=len(vector),
        )
        return vector

    def _on_stream_finish(self, requester_id: Optional[str], stream: TokenStream) -> None:
        # Bill only what reached the caller; nothing delivered, nothing billed
        if not stream.content:
            return
        self._record(requester_id, stream.result())

    def _record(
        self,
        requester_id: Optional[str],
        result: CompletionResult,
        cached: bool = False,
    ) -> None:
        if self._usage is None:
            return
        cost = 0.0
        if not cached:
            cost = estimate_cost(
                result.backend_used,
                result.model_used,
                result.prompt_tokens,
                result.completion_tokens,
            )
        self._usage.record(
            UsageEvent(
                requester_id=requester_id,
                backend=result.backend_used,
                model=result.model_used,
                prompt_tokens=result.prompt_tokens,
                completion_tokens=result.completion_tokens,
                cost=cost,
                cached=cached,
            )
        )
