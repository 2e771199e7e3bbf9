"""Observability utilities: structured logging and metrics."""

from gateway.observability.logging import setup_logging
from gateway.observability.metrics import (
    BACKEND_ATTEMPTS,
    CACHE_LOOKUPS,
    LLM_CALL_DURATION,
    QUOTA_DECISIONS,
    USAGE_EVENTS,
)

__all__ = [
    "setup_logging",
    "BACKEND_ATTEMPTS",
    "CACHE_LOOKUPS",
    "LLM_CALL_DURATION",
    "QUOTA_DECISIONS",
    "USAGE_EVENTS",
]
