"""Completion backends.

One Backend subclass per upstream. A backend holds only its credentials
and builds a LangChain chat model per call, so a single instance can be
shared by any number of concurrent requests. Backends are constructed by
the factories in BACKEND_FACTORIES, which return None when the upstream
has no credential configured.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, AsyncIterator, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from gateway.llm.pricing import estimate_tokens
from gateway.llm.streaming import (
    AnthropicChunkAdapter,
    ChunkAdapter,
    GoogleChunkAdapter,
    OpenAIChunkAdapter,
)
from gateway.models import BackendHandle, ChatTurn, CompletionRequest, CompletionResult
from gateway.settings import Settings


class Backend(ABC):
    """An upstream chat completion service."""

    name: str = ""
    supports_streaming: bool = True
    supports_embeddings: bool = False
    supports_moderation: bool = False
    chunk_adapter: ChunkAdapter = OpenAIChunkAdapter()

    @abstractmethod
    def chat_model(self, model: str, temperature: float, max_tokens: int) -> Any:
        """Build the chat model used for one call."""

    def embeddings_model(self, model: str) -> Any:
        """Build the LangChain embeddings client used for one call."""
        raise NotImplementedError(f"backend '{self.name}' does not serve embeddings")

    def handle(self) -> BackendHandle:
        """Capability description for the registry."""
        return BackendHandle(
            name=self.name,
            configured=True,
            supports_streaming=self.supports_streaming,
            supports_embeddings=self.supports_embeddings,
            supports_moderation=self.supports_moderation,
        )

    def to_messages(self, turns: Sequence[ChatTurn]) -> list[BaseMessage]:
        """Convert the conversation into LangChain messages, order preserved."""
        messages: list[BaseMessage] = []
        for turn in turns:
            if turn.role == "system":
                messages.append(SystemMessage(content=turn.content))
            elif turn.role == "assistant":
                messages.append(AIMessage(content=turn.content))
            else:
                messages.append(HumanMessage(content=turn.content))
        return messages

    def _build(self, model: str, request: CompletionRequest) -> Any:
        return self.chat_model(
            model,
            temperature=request.temperature if request.temperature is not None else 0.7,
            max_tokens=request.max_output_tokens or 2048,
        )

    async def complete(self, model: str, request: CompletionRequest) -> CompletionResult:
        """Run a non-streaming completion.

        Token counts come from the upstream when it reports them and from
        the character heuristic otherwise.
        """
        message = await self._build(model, request).ainvoke(self.to_messages(request.turns))

        content = self.chunk_adapter.text(message)
        usage = self.chunk_adapter.usage(message)
        if usage is not None:
            prompt_tokens, completion_tokens = usage.prompt_tokens, usage.completion_tokens
        else:
            estimate = estimate_tokens(request.turns, content)
            prompt_tokens, completion_tokens = estimate.prompt_tokens, estimate.completion_tokens

        return CompletionResult(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            finish_reason=self.chunk_adapter.finish_reason(message),
            backend_used=self.name,
            model_used=model,
            tokens_estimated=usage is None,
        )

    def stream(self, model: str, request: CompletionRequest) -> AsyncIterator[Any]:
        """Open the upstream's native stream of message chunks."""
        return self._build(model, request).astream(self.to_messages(request.turns))

    async def embed(self, text: str, model: str) -> list[float]:
        """Embedding vector for ``text``."""
        return await self.embeddings_model(model).aembed_query(text)


def _merge_system_turns(messages: list[BaseMessage]) -> list[BaseMessage]:
    """Collapse every system message into one leading system message."""
    system = [str(m.content) for m in messages if isinstance(m, SystemMessage)]
    rest = [m for m in messages if not isinstance(m, SystemMessage)]
    if not system:
        return rest
    return [SystemMessage(content="\n\n".join(system)), *rest]


class OpenAIBackend(Backend):
    """OpenAI chat completions."""

    name = "openai"
    supports_embeddings = True
    supports_moderation = True

    def __init__(self, api_key: str, base_url: Optional[str] = None):
        self._api_key = api_key
        self._base_url = base_url

    def chat_model(self, model: str, temperature: float, max_tokens: int) -> Any:
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(
            model=model,
            api_key=self._api_key,
            base_url=self._base_url,
            temperature=temperature,
            max_tokens=max_tokens,
            stream_usage=True,
            max_retries=0,  # Retries belong to the failover controller
        )

    def embeddings_model(self, model: str) -> Any:
        from langchain_openai import OpenAIEmbeddings

        return OpenAIEmbeddings(
            model=model,
            api_key=self._api_key,
            base_url=self._base_url,
            max_retries=0,
        )


class GroqBackend(OpenAIBackend):
    """Groq, through its OpenAI-compatible endpoint."""

    name = "groq"
    supports_embeddings = False
    supports_moderation = False

    # No embeddings endpoint behind the OpenAI-compatible API
    embeddings_model = Backend.embeddings_model


class AnthropicBackend(Backend):
    """Anthropic messages API. Requires a single leading system prompt."""

    name = "anthropic"
    chunk_adapter = AnthropicChunkAdapter()

    def __init__(self, api_key: str):
        self._api_key = api_key

    def to_messages(self, turns: Sequence[ChatTurn]) -> list[BaseMessage]:
        return _merge_system_turns(super().to_messages(turns))

    def chat_model(self, model: str, temperature: float, max_tokens: int) -> Any:
        from langchain_anthropic import ChatAnthropic
        from pydantic import SecretStr

        return ChatAnthropic(
            model=model,
            api_key=SecretStr(self._api_key),
            temperature=temperature,
            max_tokens=max_tokens,
            max_retries=0,
        )


class GoogleBackend(Backend):
    """Google Gemini."""

    name = "google"
    chunk_adapter = GoogleChunkAdapter()

    def __init__(self, api_key: str):
        self._api_key = api_key

    def to_messages(self, turns: Sequence[ChatTurn]) -> list[BaseMessage]:
        return _merge_system_turns(super().to_messages(turns))

    def chat_model(self, model: str, temperature: float, max_tokens: int) -> Any:
        from langchain_google_genai import ChatGoogleGenerativeAI

        return ChatGoogleGenerativeAI(
            model=model,
            google_api_key=self._api_key,
            temperature=temperature,
            max_output_tokens=max_tokens,
            max_retries=0,
        )


class MockBackend(Backend):
    """In-process deterministic backend."""

    name = "mock"

    def __init__(self, response_text: Optional[str] = None):
        self._response_text = response_text

    def chat_model(self, model: str, temperature: float, max_tokens: int) -> Any:
        from gateway.llm.mock import MockLLM

        return MockLLM(response_text=self._response_text)


# ============================================================================
# Factories
# ============================================================================

# Signature: (settings) -> Backend | None; None means "no credential"
BackendFactory = Callable[[Settings], Optional[Backend]]

BACKEND_FACTORIES: dict[str, BackendFactory] = {}


def register_backend(name: str, factory: BackendFactory) -> None:
    """Register a backend factory under ``name``."""
    BACKEND_FACTORIES[name] = factory


def _secret(value: Any) -> Optional[str]:
    if value is None:
        return None
    secret = value.get_secret_value()
    return secret or None


def create_openai_backend(settings: Settings) -> Optional[Backend]:
    api_key = _secret(settings.openai_api_key)
    if not api_key:
        return None
    return OpenAIBackend(api_key=api_key, base_url=settings.openai_api_base)


def create_groq_backend(settings: Settings) -> Optional[Backend]:
    api_key = _secret(settings.groq_api_key)
    if not api_key:
        return None
    return GroqBackend(api_key=api_key, base_url=settings.groq_api_base)


def create_anthropic_backend(settings: Settings) -> Optional[Backend]:
    api_key = _secret(settings.anthropic_api_key)
    if not api_key:
        return None
    return AnthropicBackend(api_key=api_key)


def create_google_backend(settings: Settings) -> Optional[Backend]:
    api_key = _secret(settings.google_api_key)
    if not api_key:
        return None
    return GoogleBackend(api_key=api_key)


def create_mock_backend(settings: Settings) -> Optional[Backend]:
    if not settings.enable_mock_backend:
        return None
    return MockBackend()


# Register built-ins
register_backend("openai", create_openai_backend)
register_backend("anthropic", create_anthropic_backend)
register_backend("groq", create_groq_backend)
register_backend("google", create_google_backend)
register_backend("mock", create_mock_backend)
