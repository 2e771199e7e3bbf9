"""Backends, streaming, failover, pricing and usage."""

from gateway.llm.backends import BACKEND_FACTORIES, Backend, register_backend
from gateway.llm.catalog import MODEL_CATALOG, CatalogModel, ModelPrice, list_models
from gateway.llm.failover import RetryFailoverController
from gateway.llm.health import BackendHealth, HealthState
from gateway.llm.pricing import (
    estimate_cost,
    estimate_cost_from_total,
    estimate_tokens,
    split_total_tokens,
)
from gateway.llm.registry import BackendRegistry
from gateway.llm.streaming import DoneEvent, ErrorEvent, StreamEvent, TokenEvent, TokenStream
from gateway.llm.usage import InMemoryUsageSink, UsageEvent, UsageRecorder, UsageSummary

__all__ = [
    # Backends
    "BACKEND_FACTORIES",
    "Backend",
    "register_backend",
    "BackendRegistry",
    "BackendHealth",
    "HealthState",
    # Catalog and pricing
    "MODEL_CATALOG",
    "CatalogModel",
    "ModelPrice",
    "list_models",
    "estimate_cost",
    "estimate_cost_from_total",
    "estimate_tokens",
    "split_total_tokens",
    # Streaming
    "DoneEvent",
    "ErrorEvent",
    "StreamEvent",
    "TokenEvent",
    "TokenStream",
    # Failover
    "RetryFailoverController",
    # Usage
    "InMemoryUsageSink",
    "UsageEvent",
    "UsageRecorder",
    "UsageSummary",
]
