"""Retry and failover across backends.

Backends are tried in failover order, each at most once per request. A
backend gets up to ``retry_attempts`` attempts on transient failures with
the configured backoff before each one; permanent failures and missing
configuration advance to the next backend immediately. Every attempt is
reported to the registry's health signal, which only affects ordering of
later requests.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from gateway.exceptions import (
    AllBackendsExhaustedError,
    BackendError,
    NotConfiguredError,
    classify_backend_error,
)
from gateway.llm.registry import BackendRegistry
from gateway.llm.streaming import StreamAccumulator, TokenStream, iter_deltas
from gateway.models import CompletionRequest, CompletionResult
from gateway.observability.metrics import BACKEND_ATTEMPTS, LLM_CALL_DURATION
from gateway.settings import Settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryFailoverController:
    """Runs one logical request against the registry's backends.

    Example:
        controller = RetryFailoverController(registry, settings)
        result = await controller.dispatch(request)
        stream = await controller.open_stream(request)
    """

    def __init__(
        self,
        registry: BackendRegistry,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._settings = settings
        self._sleep = sleep

    @property
    def registry(self) -> BackendRegistry:
        return self._registry

    def primary_backend(self, request: CompletionRequest) -> str:
        return request.backend or self._settings.default_backend

    def failover_order(self, backend: Optional[str] = None) -> list[str]:
        """Backends to try, in order, each listed once.

        The requested backend comes first even when unconfigured, so the
        aggregate failure names it. The default backend is added only when
        nothing was requested or the requested backend is unconfigured;
        every other configured backend follows in health order.
        """
        order: list[str] = []
        if backend:
            order.append(backend)
        if not backend or not self._registry.is_configured(backend):
            order.append(self._settings.default_backend)
        for name in self._registry.list_configured():
            if name not in order:
                order.append(name)
        return order

    def embedding_order(self) -> list[str]:
        """Configured backends that serve embeddings, in health order."""
        return [
            name
            for name in self._registry.list_configured()
            if self._registry.get_handle(name).supports_embeddings
        ]

    def model_for(self, backend: str, request: CompletionRequest) -> str:
        """Model to ask ``backend`` for.

        The requested model only applies to the primary backend; backends
        reached by failover serve their own default model.
        """
        if backend == self.primary_backend(request) and request.model:
            return request.model
        return self._settings.default_model_for(backend)

    async def _with_retries(
        self,
        backend: str,
        model: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Run ``call`` with retries on transient failure.

        Raises:
            BackendError: The last failure once retries are exhausted or a
                non-retryable failure occurs.
        """
        max_attempts = self._settings.retry_attempts
        for attempt in range(1, max_attempts + 1):
            delay = self._settings.backoff_before(attempt)
            if attempt > 1 and delay > 0:
                await self._sleep(delay)

            start = time.perf_counter()
            try:
                result = await call()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_backend_error(backend, e)
                outcome = "transient" if error.retryable else "permanent"
                BACKEND_ATTEMPTS.labels(backend=backend, outcome=outcome).inc()
                self._registry.report_failure(backend, error.reason)

                will_retry = error.retryable and attempt < max_attempts
                logger.warning(
                    "Backend attempt failed",
                    backend=backend,
                    model=model,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error_code=error.code.value,
                    error=error.reason,
                    will_retry=will_retry,
                )
                if not will_retry:
                    if error is e:
                        raise
                    raise error from e
                continue

            LLM_CALL_DURATION.labels(backend=backend, model=model).observe(
                time.perf_counter() - start
            )
            BACKEND_ATTEMPTS.labels(backend=backend, outcome="success").inc()
            self._registry.report_success(backend)
            logger.debug("Backend attempt succeeded", backend=backend, model=model, attempt=attempt)
            return result

        # retry_attempts is validated >= 1, so the loop always returns or raises
        raise AssertionError("unreachable")

    async def _run(
        self,
        order: list[str],
        model_for: Callable[[str], str],
        build_call: Callable[[str, str], Callable[[], Awaitable[T]]],
        requester_id: Optional[str] = None,
    ) -> T:
        attempts: list[tuple[str, BackendError]] = []

        for name in order:
            model = model_for(name)
            if not self._registry.is_configured(name):
                BACKEND_ATTEMPTS.labels(backend=name, outcome="not_configured").inc()
                logger.info("Skipping unconfigured backend", backend=name)
                attempts.append((name, NotConfiguredError(name)))
                continue

            try:
                result = await self._with_retries(name, model, build_call(name, model))
            except BackendError as e:
                attempts.append((name, e))
                if len(attempts) < len(order):
                    logger.warning(
                        "Failing over to next backend",
                        backend=name,
                        error=e.reason,
                        remaining=len(order) - len(attempts),
                    )
                continue

            if attempts:
                logger.info(
                    "Request served after failover",
                    backend=name,
                    model=model,
                    failed_backends=[failed for failed, _ in attempts],
                )
            return result

        logger.error(
            "All backends exhausted",
            backends=[name for name, _ in attempts],
            requester_id=requester_id,
        )
        raise AllBackendsExhaustedError(attempts)

    async def _run_request(
        self,
        request: CompletionRequest,
        build_call: Callable[[str, str], Callable[[], Awaitable[T]]],
    ) -> T:
        return await self._run(
            self.failover_order(self.primary_backend(request)),
            lambda name: self.model_for(name, request),
            build_call,
            requester_id=request.requester_id,
        )

    async def dispatch(self, request: CompletionRequest) -> CompletionResult:
        """Run a non-streaming completion with retry and failover.

        Raises:
            AllBackendsExhaustedError: If every backend in the order failed.
        """
        timeout = self._settings.request_timeout_seconds

        def build_call(name: str, model: str) -> Callable[[], Awaitable[CompletionResult]]:
            backend = self._registry.get_backend(name)

            async def call() -> CompletionResult:
                return await asyncio.wait_for(backend.complete(model, request), timeout)

            return call

        return await self._run_request(request, build_call)

    async def open_stream(
        self,
        request: CompletionRequest,
        on_finish: Optional[Callable[[TokenStream], None]] = None,
    ) -> TokenStream:
        """Open a stream, retrying and failing over until the first chunk.

        The returned stream already holds its first text delta, so every
        failure before delivery starts is handled here. Failures after that
        end the stream with an ErrorEvent and are never retried.

        Raises:
            AllBackendsExhaustedError: If no backend produced a first chunk.
        """
        idle_timeout = self._settings.stream_idle_timeout_seconds

        def build_call(name: str, model: str) -> Callable[[], Awaitable[TokenStream]]:
            backend = self._registry.get_backend(name)

            async def call() -> TokenStream:
                accumulator = StreamAccumulator()
                deltas = iter_deltas(
                    name,
                    backend.chunk_adapter,
                    backend.stream(model, request),
                    accumulator,
                    idle_timeout=idle_timeout,
                )
                try:
                    first = await deltas.__anext__()
                except StopAsyncIteration:
                    return TokenStream.empty(
                        name, model, request.turns, accumulator, on_finish=on_finish
                    )
                except BaseException:
                    await deltas.aclose()
                    raise
                return TokenStream(
                    name,
                    model,
                    request.turns,
                    deltas,
                    accumulator,
                    first=first,
                    on_finish=on_finish,
                )

            return call

        return await self._run_request(request, build_call)

    async def embed(self, text: str, model: Optional[str] = None) -> list[float]:
        """Embed ``text`` on the first embedding-capable backend that answers.

        Retries and failover work as for completions, over backends that
        serve embeddings only. ``model`` defaults to ``embedding_model``.

        Raises:
            AllBackendsExhaustedError: If no capable backend produced a vector.
        """
        timeout = self._settings.request_timeout_seconds
        embedding_model = model or self._settings.embedding_model

        def build_call(name: str, model: str) -> Callable[[], Awaitable[list[float]]]:
            backend = self._registry.get_backend(name)

            async def call() -> list[float]:
                return await asyncio.wait_for(backend.embed(text, model), timeout)

            return call

        return await self._run(self.embedding_order(), lambda name: embedding_model, build_call)
