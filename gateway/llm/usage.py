"""Usage recording.

The router hands every usage event to a ``UsageRecorder``, which queues it
and returns immediately. A background worker delivers queued events to a
``UsageSink``; sink failures are logged and counted, never raised. The
queue is bounded, so under sustained sink slowness new events are dropped
rather than accumulating without limit.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog

from gateway.exceptions import UsageRecordingError
from gateway.interfaces import UsageSink
from gateway.observability.metrics import USAGE_EVENTS

logger = structlog.get_logger(__name__)


@dataclass
class UsageEvent:
    """A single completion's token usage."""

    requester_id: Optional[str]
    backend: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    cached: bool = False
    timestamp: float = field(default_factory=time.time)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class UsageRecorder:
    """Bounded, non-blocking queue in front of a UsageSink.

    Example:
        recorder = UsageRecorder(sink, max_queue=1000)
        await recorder.start()
        recorder.record(UsageEvent(requester_id="u1", backend="openai", model="gpt-4"))
        await recorder.stop()  # delivers what is still queued
    """

    def __init__(self, sink: UsageSink, max_queue: int = 1000):
        self._sink = sink
        self._queue: asyncio.Queue[UsageEvent] = asyncio.Queue(maxsize=max_queue)
        self._worker_task: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        """Events queued but not yet delivered."""
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the background delivery worker."""
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker_loop())

    async def stop(self) -> None:
        """Deliver queued events, then stop the worker."""
        await self.flush()
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

    def record(self, event: UsageEvent) -> bool:
        """Queue ``event`` for delivery without waiting.

        Returns:
            False if the queue was full and the event was dropped.
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            USAGE_EVENTS.labels(outcome="dropped").inc()
            logger.warning(
                "Usage queue full, dropping event",
                requester_id=event.requester_id,
                backend=event.backend,
                model=event.model,
                queue_size=self._queue.maxsize,
            )
            return False
        return True

    async def flush(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._worker_task is None or self._worker_task.done():
            # No worker: deliver inline
            while not self._queue.empty():
                event = self._queue.get_nowait()
                try:
                    await self._deliver(event)
                finally:
                    self._queue.task_done()
            return
        await self._queue.join()

    async def _deliver(self, event: UsageEvent) -> None:
        try:
            await self._sink.record_usage(
                requester_id=event.requester_id,
                backend=event.backend,
                model=event.model,
                prompt_tokens=event.prompt_tokens,
                completion_tokens=event.completion_tokens,
                cost=event.cost,
                cached=event.cached,
            )
        except Exception as e:
            error = UsageRecordingError(str(e))
            USAGE_EVENTS.labels(outcome="failed").inc()
            logger.error(
                "Usage recording failed",
                requester_id=event.requester_id,
                backend=event.backend,
                model=event.model,
                error=error.message,
            )
            return
        USAGE_EVENTS.labels(outcome="recorded").inc()

    async def _worker_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()


# ============================================================================
# In-memory sink
# ============================================================================


@dataclass
class UsageSummary:
    """Aggregated usage for one requester."""

    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_cost: float = 0.0
    event_count: int = 0
    cache_hits: int = 0
    first_event: Optional[float] = None
    last_event: Optional[float] = None

    @property
    def total_tokens(self) -> int:
        """Total tokens across prompt and completion."""
        return self.total_prompt_tokens + self.total_completion_tokens


class InMemoryUsageSink:
    """UsageSink that keeps events in process memory.

    Suitable for development and tests; production deployments plug in a
    sink backed by their own persistence.

    Example:
        sink = InMemoryUsageSink()
        await sink.record_usage("u1", "openai", "gpt-4", 1000, 500, 0.06)
        summary = sink.get_requester_summary("u1")
        print(f"Cost: ${summary.total_cost:.4f}")
    """

    def __init__(self) -> None:
        self._events: list[UsageEvent] = []

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
        event = UsageEvent(
            requester_id=requester_id,
            backend=backend,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=cost,
            cached=cached,
        )
        self._events.append(event)

        logger.debug(
            "Recorded token usage",
            requester_id=requester_id,
            backend=backend,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            estimated_cost=f"${cost:.6f}",
            cached=cached,
        )

    @property
    def events(self) -> Sequence[UsageEvent]:
        """Every recorded event, in delivery order."""
        return list(self._events)

    def get_requester_events(self, requester_id: Optional[str]) -> Sequence[UsageEvent]:
        return [e for e in self._events if e.requester_id == requester_id]

    def get_requester_summary(self, requester_id: Optional[str]) -> UsageSummary:
        """Aggregated usage for one requester."""
        return self._aggregate_events(self.get_requester_events(requester_id))

    def get_total_summary(self) -> UsageSummary:
        """Aggregated usage across all requesters."""
        return self._aggregate_events(self._events)

    def clear_requester(self, requester_id: Optional[str]) -> None:
        """Remove usage data for a requester."""
        self._events = [e for e in self._events if e.requester_id != requester_id]

    def _aggregate_events(self, events: Sequence[UsageEvent]) -> UsageSummary:
        """Aggregate a sequence of events into a summary."""
        if not events:
            return UsageSummary()

        summary = UsageSummary(
            event_count=len(events),
            first_event=events[0].timestamp,
            last_event=events[-1].timestamp,
        )

        for event in events:
            summary.total_prompt_tokens += event.prompt_tokens
            summary.total_completion_tokens += event.completion_tokens
            summary.total_cost += event.cost
            if event.cached:
                summary.cache_hits += 1

        return summary
