"""Streaming normalizer.

Each backend delivers its stream as a sequence of native chunks whose
shape differs per upstream (plain string deltas, lists of typed content
blocks, metadata-only chunks carrying usage or stop reasons). A
ChunkAdapter knows how to read one backend's chunks; ``iter_deltas``
turns a native stream into plain text deltas; ``TokenStream`` is what
callers consume: TokenEvents in upstream order followed by exactly one
DoneEvent or ErrorEvent.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Literal, Optional, Sequence

import structlog

from gateway.exceptions import TransientBackendError, classify_backend_error
from gateway.llm.pricing import estimate_tokens
from gateway.models import ChatTurn, CompletionResult

logger = structlog.get_logger(__name__)


@dataclass
class TokenEvent:
    """A streaming text delta."""

    content: str


@dataclass
class DoneEvent:
    """End-of-stream signal."""

    finish_reason: Optional[str] = None


@dataclass
class ErrorEvent:
    """Terminal error; no further events follow."""

    message: str
    code: str = "stream_error"


StreamEvent = TokenEvent | DoneEvent | ErrorEvent


@dataclass(frozen=True)
class ChunkUsage:
    """Token usage carried by a native chunk or message."""

    prompt_tokens: int = 0
    completion_tokens: int = 0


# ============================================================================
# Per-backend chunk adapters
# ============================================================================


class ChunkAdapter:
    """Reads LangChain message chunks whose content is a plain string."""

    finish_key = "finish_reason"

    def text(self, chunk: Any) -> str:
        """Incremental text carried by ``chunk`` ("" for control chunks)."""
        content = getattr(chunk, "content", None)
        if isinstance(content, str):
            return content
        return ""

    def usage(self, chunk: Any) -> Optional[ChunkUsage]:
        """Usage reported on ``chunk``, if any."""
        metadata = getattr(chunk, "usage_metadata", None)
        if not metadata:
            return None
        return ChunkUsage(
            prompt_tokens=int(metadata.get("input_tokens", 0) or 0),
            completion_tokens=int(metadata.get("output_tokens", 0) or 0),
        )

    def finish_reason(self, chunk: Any) -> Optional[str]:
        """Stop reason reported on ``chunk``, if any."""
        metadata = getattr(chunk, "response_metadata", None) or {}
        reason = metadata.get(self.finish_key)
        return str(reason) if reason else None


class OpenAIChunkAdapter(ChunkAdapter):
    """OpenAI and OpenAI-compatible chat completions (``choices[0].delta.content``)."""


class AnthropicChunkAdapter(ChunkAdapter):
    """Anthropic messages.

    Content arrives as a list of typed blocks. Only text blocks carry
    output; tool-use and partial-JSON blocks are dropped.
    """

    finish_key = "stop_reason"

    def text(self, chunk: Any) -> str:
        content = getattr(chunk, "content", None)
        if isinstance(content, str):
            return content
        if not isinstance(content, list):
            return ""
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") in ("text", "text_delta"):
                parts.append(block.get("text") or "")
        return "".join(parts)


class GoogleChunkAdapter(ChunkAdapter):
    """Google Gemini. Content is a string or a list of strings and text parts."""

    def text(self, chunk: Any) -> str:
        content = getattr(chunk, "content", None)
        if isinstance(content, str):
            return content
        if not isinstance(content, list):
            return ""
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and "text" in part and part.get("type", "text") == "text":
                parts.append(part["text"] or "")
        return "".join(parts)


# ============================================================================
# Native stream -> text deltas
# ============================================================================


@dataclass
class StreamAccumulator:
    """Collects what a stream delivered: text, usage and stop reason."""

    parts: list[str] = field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    usage_reported: bool = False
    finish_reason: Optional[str] = None

    @property
    def content(self) -> str:
        return "".join(self.parts)

    def observe(self, adapter: ChunkAdapter, chunk: Any) -> None:
        usage = adapter.usage(chunk)
        if usage is not None:
            self.usage_reported = True
            self.prompt_tokens += usage.prompt_tokens
            self.completion_tokens += usage.completion_tokens
        reason = adapter.finish_reason(chunk)
        if reason:
            self.finish_reason = reason


async def iter_deltas(
    backend: str,
    adapter: ChunkAdapter,
    native: AsyncIterator[Any],
    accumulator: StreamAccumulator,
    idle_timeout: Optional[float] = None,
) -> AsyncIterator[str]:
    """Yield the non-empty text deltas of a native stream, in order.

    Raises:
        TransientBackendError: If no chunk arrives within ``idle_timeout``.
    """
    iterator = native.__aiter__()
    try:
        while True:
            try:
                if idle_timeout:
                    chunk = await asyncio.wait_for(iterator.__anext__(), idle_timeout)
                else:
                    chunk = await iterator.__anext__()
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as exc:
                raise TransientBackendError(
                    backend, f"no chunk received within {idle_timeout}s"
                ) from exc

            accumulator.observe(adapter, chunk)
            text = adapter.text(chunk)
            if text:
                yield text
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


# ============================================================================
# Caller-facing stream
# ============================================================================


StreamOutcome = Literal["done", "error", "cancelled"]


class TokenStream:
    """Lazy, finite, forward-only sequence of stream events.

    Yields TokenEvents in the order the backend emitted them, then exactly
    one DoneEvent or ErrorEvent, after which iteration stops. The stream is
    not restartable. ``aclose()`` (or leaving ``async with``) cancels it:
    the upstream connection is released, any buffered delta is discarded
    and nothing further is emitted.

    Example:
        async with await gateway.complete_streaming(turns) as stream:
            async for event in stream:
                if isinstance(event, TokenEvent):
                    print(event.content, end="")
    """

    def __init__(
        self,
        backend: str,
        model: str,
        turns: Sequence[ChatTurn],
        deltas: AsyncIterator[str],
        accumulator: StreamAccumulator,
        first: Optional[str] = None,
        on_finish: Optional[Callable[[TokenStream], None]] = None,
    ):
        self.backend = backend
        self.model = model
        self._turns = tuple(turns)
        self._deltas = deltas
        self._accumulator = accumulator
        self._pending = first
        self._on_finish = on_finish
        self._finished = False
        self._pull: Optional[asyncio.Future[Optional[str]]] = None
        self.outcome: Optional[StreamOutcome] = None
        self.error: Optional[Exception] = None

    @classmethod
    def empty(
        cls,
        backend: str,
        model: str,
        turns: Sequence[ChatTurn],
        accumulator: StreamAccumulator,
        on_finish: Optional[Callable[[TokenStream], None]] = None,
    ) -> TokenStream:
        """A stream whose backend finished without producing any text."""

        async def _nothing() -> AsyncIterator[str]:
            return
            yield  # pragma: no cover

        return cls(backend, model, turns, _nothing(), accumulator, on_finish=on_finish)

    @property
    def content(self) -> str:
        """Text delivered to the caller so far."""
        return self._accumulator.content

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> TokenStream:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration

        if self._pending is not None:
            text, self._pending = self._pending, None
            return self._deliver(text)

        # The pull runs as its own task so aclose() from another task can
        # cancel it instead of closing a generator that is still running
        self._pull = asyncio.ensure_future(self._next_delta())
        try:
            text = await self._pull
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._finished and current is not None and not current.cancelling():
                # Closed by another task while this one was waiting
                raise StopAsyncIteration from None
            self._finish("cancelled")
            await self._release()
            raise
        except Exception as exc:
            if self._finished:
                raise StopAsyncIteration from None
            error = classify_backend_error(self.backend, exc)
            logger.warning(
                "Stream failed after delivery started",
                backend=self.backend,
                model=self.model,
                delivered_chars=len(self.content),
                error=error.reason,
            )
            self.error = error
            self._finish("error")
            return ErrorEvent(message=error.message, code=error.code.value)
        finally:
            self._pull = None

        if self._finished:
            # Cancelled while the pull was completing; the delta is dropped
            raise StopAsyncIteration
        if text is None:
            self._finish("done")
            return DoneEvent(finish_reason=self._accumulator.finish_reason)
        return self._deliver(text)

    async def _next_delta(self) -> Optional[str]:
        try:
            return await self._deltas.__anext__()
        except StopAsyncIteration:
            return None

    async def _release(self) -> None:
        """Stop any in-flight pull, then close the delta generator."""
        pull = self._pull
        if pull is not None and not pull.done():
            pull.cancel()
            await asyncio.wait([pull])
        if pull is not None and not pull.cancelled():
            # Retrieve the outcome of a pull nobody will consume
            pull.exception()
        aclose = getattr(self._deltas, "aclose", None)
        if aclose is not None:
            await aclose()

    def _deliver(self, text: str) -> TokenEvent:
        self._accumulator.parts.append(text)
        return TokenEvent(content=text)

    def _finish(self, outcome: StreamOutcome) -> None:
        if self._finished:
            return
        self._finished = True
        self._pending = None
        self.outcome = outcome
        if self._on_finish is not None:
            self._on_finish(self)

    async def aclose(self) -> None:
        """Cancel the stream and release the upstream connection."""
        if self._finished:
            return
        # Finish first so a pull completing meanwhile is discarded
        self._finish("cancelled")
        logger.info(
            "Stream cancelled by caller",
            backend=self.backend,
            model=self.model,
            delivered_chars=len(self.content),
        )
        await self._release()

    async def __aenter__(self) -> TokenStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def collect(self) -> str:
        """Consume the remaining events and return the full delivered text."""
        async for _ in self:
            pass
        return self.content

    def result(self) -> CompletionResult:
        """Delivered text and token counts as a CompletionResult."""
        acc = self._accumulator
        if acc.usage_reported:
            prompt_tokens, completion_tokens = acc.prompt_tokens, acc.completion_tokens
        else:
            estimate = estimate_tokens(self._turns, acc.content)
            prompt_tokens, completion_tokens = estimate.prompt_tokens, estimate.completion_tokens
        return CompletionResult(
            content=acc.content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            finish_reason=acc.finish_reason,
            backend_used=self.backend,
            model_used=self.model,
            tokens_estimated=not acc.usage_reported,
        )
