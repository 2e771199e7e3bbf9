"""Per-backend health signal.

Every attempt against a backend reports its outcome here. Health is an
observability signal and an ordering hint for later requests; it never
blocks an attempt inside a request the way a circuit breaker would.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class HealthState(str, Enum):
    """Backend health states."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"  # Last attempt failed
    UNHEALTHY = "unhealthy"  # Failure threshold reached


@dataclass
class HealthMetrics:
    """Counters for one backend."""

    state: HealthState = HealthState.HEALTHY
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    consecutive_failures: int = 0
    last_failure: Optional[str] = None
    last_failure_time: Optional[float] = None
    last_state_change: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics to dictionary."""
        return {
            "state": self.state.value,
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "consecutive_failures": self.consecutive_failures,
            "last_failure": self.last_failure,
            "last_failure_time": self.last_failure_time,
            "last_state_change": self.last_state_change,
        }


class BackendHealth:
    """Tracks health for a set of backends.

    Example:
        health = BackendHealth(unhealthy_after=5)
        health.record_failure("openai", "timeout")
        health.state("openai")  # HealthState.DEGRADED
        health.record_success("openai")
        health.state("openai")  # HealthState.HEALTHY
    """

    def __init__(self, unhealthy_after: int = 5):
        self._unhealthy_after = max(1, unhealthy_after)
        self._metrics: dict[str, HealthMetrics] = {}
        self._lock = threading.Lock()

    def _get(self, backend: str) -> HealthMetrics:
        metrics = self._metrics.get(backend)
        if metrics is None:
            metrics = self._metrics[backend] = HealthMetrics()
        return metrics

    def _transition(self, metrics: HealthMetrics, state: HealthState) -> None:
        if metrics.state != state:
            metrics.state = state
            metrics.last_state_change = time.time()

    def record_success(self, backend: str) -> None:
        """Record a successful attempt."""
        with self._lock:
            metrics = self._get(backend)
            metrics.total_calls += 1
            metrics.successful_calls += 1
            metrics.consecutive_failures = 0
            self._transition(metrics, HealthState.HEALTHY)

    def record_failure(self, backend: str, reason: str) -> None:
        """Record a failed attempt."""
        with self._lock:
            metrics = self._get(backend)
            metrics.total_calls += 1
            metrics.failed_calls += 1
            metrics.consecutive_failures += 1
            metrics.last_failure = reason
            metrics.last_failure_time = time.time()
            if metrics.consecutive_failures >= self._unhealthy_after:
                self._transition(metrics, HealthState.UNHEALTHY)
            else:
                self._transition(metrics, HealthState.DEGRADED)

    def state(self, backend: str) -> HealthState:
        """Current state; backends never attempted are healthy."""
        with self._lock:
            metrics = self._metrics.get(backend)
            return metrics.state if metrics else HealthState.HEALTHY

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Metrics for every backend seen so far."""
        with self._lock:
            return {name: metrics.to_dict() for name, metrics in self._metrics.items()}

    def reset(self, backend: str) -> None:
        """Forget everything recorded for a backend."""
        with self._lock:
            self._metrics.pop(backend, None)
