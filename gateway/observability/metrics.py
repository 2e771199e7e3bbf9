"""Prometheus metrics for the completion gateway."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

BACKEND_ATTEMPTS = Counter(
    "gateway_backend_attempts_total",
    "Completion attempts against a backend",
    ["backend", "outcome"],  # success, transient, permanent, not_configured
)

LLM_CALL_DURATION = Histogram(
    "gateway_llm_call_duration_seconds",
    "Backend call duration",
    ["backend", "model"],
)

CACHE_LOOKUPS = Counter(
    "gateway_cache_lookups_total",
    "Response cache lookups",
    ["result"],  # hit, miss, error
)

QUOTA_DECISIONS = Counter(
    "gateway_quota_decisions_total",
    "Quota gate decisions",
    ["tier", "decision"],  # allowed, denied
)

USAGE_EVENTS = Counter(
    "gateway_usage_events_total",
    "Usage events handed to the usage recorder",
    ["outcome"],  # recorded, dropped, failed
)
