"""Shared test fixtures and configuration."""

from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Optional, Sequence

import pytest
from langchain_core.messages import AIMessageChunk
from pydantic_settings import SettingsConfigDict

from gateway.llm.backends import Backend
from gateway.llm.failover import RetryFailoverController
from gateway.llm.registry import BackendRegistry
from gateway.llm.usage import InMemoryUsageSink
from gateway.models import CompletionRequest, CompletionResult
from gateway.settings import Settings


# ============================================================================
# PYTEST CONFIG & MARKERS
# ============================================================================


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test (fast, no I/O)")
    config.addinivalue_line(
        "markers", "integration: mark test as integration (several components wired together)"
    )


# ============================================================================
# SETTINGS
# ============================================================================


class GatewayTestSettings(Settings):
    """Settings that don't load from an env file."""

    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )


def build_settings(**overrides: Any) -> Settings:
    """Settings with no real credentials and no backoff delays."""
    values: dict[str, Any] = {
        "openai_api_key": None,
        "anthropic_api_key": None,
        "groq_api_key": None,
        "google_api_key": None,
        "enable_mock_backend": False,
        "default_backend": "primary",
        "default_model": "test-model",
        "backend_order": ["primary", "secondary", "tertiary"],
        "retry_backoff_seconds": [0.0, 0.0, 0.0],
        "request_timeout_seconds": 5.0,
        "stream_idle_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return GatewayTestSettings(**values)


@pytest.fixture
def settings() -> Settings:
    """Gateway settings for tests."""
    return build_settings()


# ============================================================================
# SCRIPTED BACKENDS
# ============================================================================


class ScriptedBackend(Backend):
    """Backend whose behaviour is scripted by the test.

    ``failures`` are raised by the next calls, one per call, before the
    backend starts answering normally. ``fail_stream_after`` makes a stream
    break after that many chunks. A backend given an ``embedding`` serves
    embeddings and returns that vector.
    """

    def __init__(
        self,
        name: str,
        chunks: Sequence[str] = ("Hello", " from", " backend"),
        failures: Sequence[BaseException] = (),
        fail_stream_after: Optional[int] = None,
        usage: Optional[tuple[int, int]] = (10, 5),
        embedding: Optional[Sequence[float]] = None,
    ):
        self.name = name
        self.chunks = list(chunks)
        self.failures = list(failures)
        self.fail_stream_after = fail_stream_after
        self.usage = usage
        self.complete_calls = 0
        self.stream_calls = 0
        self.chunks_pulled = 0
        self.streams_closed = 0
        self.embedding = list(embedding) if embedding is not None else None
        self.supports_embeddings = embedding is not None
        self.embed_calls: list[tuple[str, str]] = []

    @property
    def reply(self) -> str:
        return "".join(self.chunks)

    def chat_model(self, model: str, temperature: float, max_tokens: int) -> Any:
        raise NotImplementedError("scripted backends answer directly")

    async def complete(self, model: str, request: CompletionRequest) -> CompletionResult:
        self.complete_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        prompt_tokens, completion_tokens = self.usage or (0, 0)
        return CompletionResult(
            content=self.reply,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            finish_reason="stop",
            backend_used=self.name,
            model_used=model,
        )

    async def embed(self, text: str, model: str) -> list[float]:
        self.embed_calls.append((text, model))
        if self.failures:
            raise self.failures.pop(0)
        if self.embedding is None:
            raise NotImplementedError("scripted backend has no embedding")
        return list(self.embedding)

    def stream(self, model: str, request: CompletionRequest) -> AsyncIterator[Any]:
        self.stream_calls += 1
        return self._stream()

    async def _stream(self) -> AsyncIterator[AIMessageChunk]:
        if self.failures:
            raise self.failures.pop(0)
        try:
            for index, text in enumerate(self.chunks):
                if self.fail_stream_after is not None and index == self.fail_stream_after:
                    raise ConnectionError("connection reset by peer")
                self.chunks_pulled += 1
                yield AIMessageChunk(content=text)
            # Metadata-only chunk carrying the stop reason
            yield AIMessageChunk(content="", response_metadata={"finish_reason": "stop"})
        finally:
            self.streams_closed += 1


@pytest.fixture
def scripted_backend() -> Callable[..., ScriptedBackend]:
    """Factory for scripted backends."""
    return ScriptedBackend


def registry_for(
    settings: Settings,
    backends: dict[str, Optional[Backend]],
) -> BackendRegistry:
    """Registry whose factories return the given backends (None = unconfigured)."""
    factories = {name: (lambda s, b=backend: b) for name, backend in backends.items()}
    return BackendRegistry(settings, factories=factories)


@pytest.fixture
def make_registry(settings) -> Callable[..., BackendRegistry]:
    """Build a registry over scripted backends."""

    def _make(backends: dict[str, Optional[Backend]], **overrides: Any) -> BackendRegistry:
        return registry_for(build_settings(**overrides) if overrides else settings, backends)

    return _make


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_controller(recording_sleep) -> Callable[[BackendRegistry], RetryFailoverController]:
    """Build a failover controller that never really sleeps."""

    def _make(registry: BackendRegistry) -> RetryFailoverController:
        return RetryFailoverController(registry, registry.settings, sleep=recording_sleep)

    return _make


@pytest.fixture
def usage_sink() -> InMemoryUsageSink:
    return InMemoryUsageSink()
