"""Multi-backend chat completion gateway."""

from gateway.exceptions import (
    AllBackendsExhaustedError,
    GatewayError,
    QuotaExceededError,
    ValidationError,
)
from gateway.models import ChatTurn, CompletionRequest, CompletionResult, ModelOption
from gateway.service import CompletionGateway, create_gateway
from gateway.settings import Settings, get_settings

__version__ = "0.1.0"

__all__ = [
    "AllBackendsExhaustedError",
    "ChatTurn",
    "CompletionGateway",
    "CompletionRequest",
    "CompletionResult",
    "GatewayError",
    "ModelOption",
    "QuotaExceededError",
    "Settings",
    "ValidationError",
    "create_gateway",
    "get_settings",
]
