"""Unit tests for the retry and failover controller."""

from __future__ import annotations

import asyncio

import pytest

from gateway.exceptions import (
    AllBackendsExhaustedError,
    NotConfiguredError,
    PermanentBackendError,
    TransientBackendError,
)
from gateway.llm.health import HealthState
from gateway.llm.streaming import DoneEvent, ErrorEvent, TokenEvent
from gateway.models import ChatTurn, CompletionRequest


def make_request(**kwargs) -> CompletionRequest:
    return CompletionRequest(turns=(ChatTurn(role="user", content="Hello"),), **kwargs)


class Unavailable(Exception):
    """Upstream 503."""

    status_code = 503


class Unauthorized(Exception):
    """Upstream 401."""

    status_code = 401


class TestFailoverOrder:
    """Test the order in which backends are tried."""

    def test_requested_backend_first(self, make_registry, make_controller, scripted_backend):
        """Test an explicit backend leads, then the other configured backends."""
        registry = make_registry(
            {
                "primary": scripted_backend("primary"),
                "secondary": scripted_backend("secondary"),
                "tertiary": scripted_backend("tertiary"),
            }
        )
        controller = make_controller(registry)
        assert controller.failover_order("tertiary") == ["tertiary", "primary", "secondary"]

    def test_default_backend_when_unspecified(self, make_registry, make_controller, scripted_backend):
        """Test the default backend leads when none is requested."""
        registry = make_registry(
            {"primary": scripted_backend("primary"), "secondary": scripted_backend("secondary")}
        )
        controller = make_controller(registry)
        assert controller.failover_order(None) == ["primary", "secondary"]

    def test_unconfigured_default_not_added_after_request(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test a configured requested backend does not drag in an unconfigured default."""
        registry = make_registry({"primary": None, "secondary": scripted_backend("secondary")})
        controller = make_controller(registry)
        assert controller.failover_order("secondary") == ["secondary"]

    def test_default_added_when_request_unconfigured(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test an unconfigured requested backend is followed by the default."""
        registry = make_registry(
            {"primary": scripted_backend("primary"), "secondary": scripted_backend("secondary")}
        )
        controller = make_controller(registry)
        assert controller.failover_order("elsewhere") == ["elsewhere", "primary", "secondary"]

    def test_each_backend_listed_once(self, make_registry, make_controller, scripted_backend):
        """Test no backend appears twice."""
        registry = make_registry({"primary": scripted_backend("primary")})
        controller = make_controller(registry)
        assert controller.failover_order("primary") == ["primary"]

    def test_requested_model_only_on_primary(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test failover backends use their own default model."""
        registry = make_registry({"primary": scripted_backend("primary")})
        controller = make_controller(registry)
        request = make_request(backend="primary", model="special-model")
        assert controller.model_for("primary", request) == "special-model"
        assert controller.model_for("secondary", request) == "test-model"


class TestDispatch:
    """Test non-streaming dispatch."""

    async def test_success_first_try(self, make_registry, make_controller, scripted_backend):
        """Test a healthy primary serves the request."""
        primary = scripted_backend("primary")
        controller = make_controller(make_registry({"primary": primary}))
        result = await controller.dispatch(make_request())
        assert result.backend_used == "primary"
        assert result.content == "Hello from backend"
        assert primary.complete_calls == 1

    async def test_transient_retried_on_same_backend(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test two transient failures then success stays on the primary."""
        primary = scripted_backend("primary", failures=[Unavailable("503"), asyncio.TimeoutError()])
        secondary = scripted_backend("secondary")
        controller = make_controller(make_registry({"primary": primary, "secondary": secondary}))

        result = await controller.dispatch(make_request())

        assert result.backend_used == "primary"
        assert primary.complete_calls == 3
        assert secondary.complete_calls == 0

    async def test_retries_exhausted_fails_over(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test three transient failures advance to the next backend."""
        primary = scripted_backend("primary", failures=[Unavailable("503")] * 3)
        secondary = scripted_backend("secondary", chunks=["from secondary"])
        controller = make_controller(make_registry({"primary": primary, "secondary": secondary}))

        result = await controller.dispatch(make_request())

        assert result.backend_used == "secondary"
        assert result.content == "from secondary"
        assert primary.complete_calls == 3

    async def test_permanent_not_retried(self, make_registry, make_controller, scripted_backend):
        """Test a permanent failure fails over immediately."""
        primary = scripted_backend("primary", failures=[Unauthorized("bad key")])
        secondary = scripted_backend("secondary")
        controller = make_controller(make_registry({"primary": primary, "secondary": secondary}))

        result = await controller.dispatch(make_request())

        assert result.backend_used == "secondary"
        assert primary.complete_calls == 1

    async def test_unconfigured_requested_backend(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test an unconfigured requested backend fails over without a call."""
        secondary = scripted_backend("secondary")
        controller = make_controller(make_registry({"primary": None, "secondary": secondary}))

        result = await controller.dispatch(make_request(backend="primary"))

        assert result.backend_used == "secondary"

    async def test_all_exhausted(self, make_registry, make_controller, scripted_backend):
        """Test the aggregate error lists every backend's last failure."""
        primary = scripted_backend("primary", failures=[Unavailable("503")] * 3)
        secondary = scripted_backend("secondary", failures=[Unauthorized("denied")])
        controller = make_controller(
            make_registry({"primary": primary, "secondary": secondary, "tertiary": None})
        )

        with pytest.raises(AllBackendsExhaustedError) as exc_info:
            await controller.dispatch(make_request())

        attempts = exc_info.value.attempts
        assert [name for name, _ in attempts] == ["primary", "secondary"]
        assert isinstance(attempts[0][1], TransientBackendError)
        assert isinstance(attempts[1][1], PermanentBackendError)

    async def test_exhausted_names_only_tried_backends(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test the aggregate for a requested backend omits an unconfigured default."""
        secondary = scripted_backend("secondary", failures=[Unauthorized("denied")])
        controller = make_controller(make_registry({"primary": None, "secondary": secondary}))

        with pytest.raises(AllBackendsExhaustedError) as exc_info:
            await controller.dispatch(make_request(backend="secondary"))

        assert [name for name, _ in exc_info.value.attempts] == ["secondary"]

    async def test_nothing_configured(self, make_registry, make_controller):
        """Test a request with no usable backend fails with the aggregate."""
        controller = make_controller(make_registry({"primary": None}))
        with pytest.raises(AllBackendsExhaustedError) as exc_info:
            await controller.dispatch(make_request())
        assert isinstance(exc_info.value.attempts[0][1], NotConfiguredError)

    async def test_backoff_schedule(
        self, make_registry, make_controller, scripted_backend, recording_sleep
    ):
        """Test delays before attempts two and three."""
        primary = scripted_backend("primary", failures=[Unavailable("503")] * 3)
        registry = make_registry({"primary": primary}, retry_backoff_seconds=[0.0, 0.2, 0.5])
        controller = make_controller(registry)

        with pytest.raises(AllBackendsExhaustedError):
            await controller.dispatch(make_request())

        assert recording_sleep.delays == [0.2, 0.5]

    async def test_timeout_is_transient(self, make_registry, make_controller, scripted_backend):
        """Test a slow backend times out and the next one serves."""

        class SlowBackend(scripted_backend):
            async def complete(self, model, request):
                self.complete_calls += 1
                await asyncio.sleep(10)

        slow = SlowBackend("primary")
        registry = make_registry(
            {"primary": slow, "secondary": scripted_backend("secondary")},
            request_timeout_seconds=0.01,
            retry_attempts=1,
        )
        controller = make_controller(registry)

        result = await controller.dispatch(make_request())

        assert result.backend_used == "secondary"
        assert slow.complete_calls == 1

    async def test_health_reported(self, make_registry, make_controller, scripted_backend):
        """Test every attempt feeds the health signal."""
        primary = scripted_backend("primary", failures=[Unauthorized("denied")])
        registry = make_registry({"primary": primary, "secondary": scripted_backend("secondary")})
        controller = make_controller(registry)

        await controller.dispatch(make_request())

        assert registry.health.state("primary") == HealthState.DEGRADED
        assert registry.health.state("secondary") == HealthState.HEALTHY
        # Degraded primary now sorts last for later requests
        assert registry.list_configured() == ["secondary", "primary"]


class TestOpenStream:
    """Test streaming dispatch."""

    async def test_stream_primed_with_first_chunk(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test the stream yields every chunk then done."""
        primary = scripted_backend("primary", chunks=["a", "b", "c"])
        controller = make_controller(make_registry({"primary": primary}))

        stream = await controller.open_stream(make_request(streaming=True))
        events = [event async for event in stream]

        assert events == [TokenEvent("a"), TokenEvent("b"), TokenEvent("c"), DoneEvent("stop")]
        assert stream.backend == "primary"

    async def test_failure_before_first_chunk_fails_over(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test failures before delivery are retried and failed over."""
        primary = scripted_backend("primary", failures=[Unauthorized("denied")])
        secondary = scripted_backend("secondary", chunks=["x", "y"])
        controller = make_controller(make_registry({"primary": primary, "secondary": secondary}))

        stream = await controller.open_stream(make_request(streaming=True))

        assert stream.backend == "secondary"
        assert await stream.collect() == "xy"

    async def test_failure_after_first_chunk_not_retried(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test a mid-stream failure becomes an ErrorEvent with no retry."""
        primary = scripted_backend("primary", chunks=["a", "b", "c"], fail_stream_after=2)
        secondary = scripted_backend("secondary")
        controller = make_controller(make_registry({"primary": primary, "secondary": secondary}))

        stream = await controller.open_stream(make_request(streaming=True))
        events = [event async for event in stream]

        assert events[:2] == [TokenEvent("a"), TokenEvent("b")]
        assert isinstance(events[2], ErrorEvent)
        assert len(events) == 3
        assert primary.stream_calls == 1
        assert secondary.stream_calls == 0

    async def test_all_exhausted_before_first_chunk(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test streaming raises the aggregate when nothing could start."""
        primary = scripted_backend("primary", failures=[Unavailable("503")] * 3)
        controller = make_controller(make_registry({"primary": primary}))

        with pytest.raises(AllBackendsExhaustedError):
            await controller.open_stream(make_request(streaming=True))
        assert primary.stream_calls == 3

    async def test_empty_stream(self, make_registry, make_controller, scripted_backend):
        """Test a backend producing no text yields only DoneEvent."""
        primary = scripted_backend("primary", chunks=[])
        controller = make_controller(make_registry({"primary": primary}))

        stream = await controller.open_stream(make_request(streaming=True))

        assert [event async for event in stream] == [DoneEvent("stop")]


class TestEmbed:
    """Test embedding dispatch."""

    async def test_only_capable_backends_tried(
        self, make_registry, make_controller, scripted_backend
    ):
        """Test backends without embeddings are skipped, not attempted."""
        chat_only = scripted_backend("primary")
        embedder = scripted_backend("secondary", embedding=[0.5, 0.25])
        controller = make_controller(make_registry({"primary": chat_only, "secondary": embedder}))

        assert controller.embedding_order() == ["secondary"]
        assert await controller.embed("hello") == [0.5, 0.25]
        assert chat_only.embed_calls == []
        assert embedder.embed_calls == [("hello", "text-embedding-ada-002")]

    async def test_requested_model_used(self, make_registry, make_controller, scripted_backend):
        """Test an explicit embedding model reaches the backend."""
        embedder = scripted_backend("primary", embedding=[1.0])
        controller = make_controller(make_registry({"primary": embedder}))

        await controller.embed("hello", model="text-embedding-3-small")

        assert embedder.embed_calls == [("hello", "text-embedding-3-small")]

    async def test_transient_retried(
        self, make_registry, make_controller, scripted_backend, recording_sleep
    ):
        """Test transient failures are retried on the same backend with backoff."""
        embedder = scripted_backend(
            "primary", embedding=[1.0], failures=[Unavailable("503")] * 2
        )
        registry = make_registry({"primary": embedder}, retry_backoff_seconds=[0.0, 0.2, 0.5])
        controller = make_controller(registry)

        assert await controller.embed("hello") == [1.0]
        assert len(embedder.embed_calls) == 3
        assert recording_sleep.delays == [0.2, 0.5]

    async def test_permanent_fails_over(self, make_registry, make_controller, scripted_backend):
        """Test a permanent failure moves to the next capable backend at once."""
        primary = scripted_backend("primary", embedding=[1.0], failures=[Unauthorized("denied")])
        secondary = scripted_backend("secondary", embedding=[2.0])
        controller = make_controller(make_registry({"primary": primary, "secondary": secondary}))

        assert await controller.embed("hello") == [2.0]
        assert len(primary.embed_calls) == 1
        assert controller.registry.health.state("primary") == HealthState.DEGRADED

    async def test_no_capable_backend(self, make_registry, make_controller, scripted_backend):
        """Test the aggregate error when no configured backend serves embeddings."""
        controller = make_controller(make_registry({"primary": scripted_backend("primary")}))

        with pytest.raises(AllBackendsExhaustedError) as exc_info:
            await controller.embed("hello")

        assert exc_info.value.attempts == []

    async def test_all_capable_exhausted(self, make_registry, make_controller, scripted_backend):
        """Test every capable backend's last failure is reported."""
        primary = scripted_backend("primary", embedding=[1.0], failures=[Unavailable("503")] * 3)
        controller = make_controller(make_registry({"primary": primary}))

        with pytest.raises(AllBackendsExhaustedError) as exc_info:
            await controller.embed("hello")

        [(name, error)] = exc_info.value.attempts
        assert name == "primary"
        assert isinstance(error, TransientBackendError)