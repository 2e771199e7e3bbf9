"""Centralized error handling and custom exceptions for the completion gateway."""

from __future__ import annotations

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Sequence

import httpx


class ErrorCode(str, Enum):
    """Standardized error codes for client communication."""

    INTERNAL_ERROR = "internal_error"
    VALIDATION_ERROR = "validation_error"

    # Quota errors
    QUOTA_EXCEEDED = "quota_exceeded"

    # Backend errors
    BACKEND_NOT_CONFIGURED = "backend_not_configured"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_PERMANENT = "backend_permanent"
    ALL_BACKENDS_EXHAUSTED = "all_backends_exhausted"

    # Best-effort side channels
    CACHE_ERROR = "cache_error"
    USAGE_RECORDING_ERROR = "usage_recording_error"


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(GatewayError):
    """Malformed completion request."""

    def __init__(self, field: str, message: str):
        super().__init__(
            message=f"Validation failed for '{field}': {message}",
            code=ErrorCode.VALIDATION_ERROR,
            details={"field": field, "error": message},
        )
        self.field = field


class QuotaExceededError(GatewayError):
    """Requester has used up the budget for the current window."""

    def __init__(self, requester_id: str, tier: str, limit: int, reset_at: datetime):
        super().__init__(
            message=f"Daily limit ({limit}) reached for tier '{tier}'",
            code=ErrorCode.QUOTA_EXCEEDED,
            details={
                "requester_id": requester_id,
                "tier": tier,
                "limit": limit,
                "reset_at": reset_at.isoformat(),
            },
        )
        self.reset_at = reset_at
        self.limit = limit
        self.tier = tier


class BackendError(GatewayError):
    """Errors raised while talking to an upstream backend."""

    retryable = False

    def __init__(
        self,
        backend: str,
        reason: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int | None = None,
    ):
        super().__init__(
            message=f"Backend '{backend}' failed: {reason}",
            code=code,
            details={"backend": backend, "reason": reason, "status_code": status_code},
        )
        self.backend = backend
        self.reason = reason
        self.status_code = status_code


class NotConfiguredError(BackendError):
    """Backend has no credential and can never be used in this process."""

    def __init__(self, backend: str):
        super().__init__(
            backend,
            "not configured",
            code=ErrorCode.BACKEND_NOT_CONFIGURED,
        )


class TransientBackendError(BackendError):
    """Network failure, timeout or upstream 5xx. Worth retrying."""

    retryable = True

    def __init__(self, backend: str, reason: str, status_code: int | None = None):
        super().__init__(
            backend,
            reason,
            code=ErrorCode.BACKEND_TRANSIENT,
            status_code=status_code,
        )


class PermanentBackendError(BackendError):
    """Bad request, rejected credentials or content policy rejection."""

    def __init__(self, backend: str, reason: str, status_code: int | None = None):
        super().__init__(
            backend,
            reason,
            code=ErrorCode.BACKEND_PERMANENT,
            status_code=status_code,
        )


class AllBackendsExhaustedError(GatewayError):
    """Every backend in the failover order failed."""

    def __init__(self, attempts: Sequence[tuple[str, BackendError]]):
        self.attempts = list(attempts)
        summary = "; ".join(f"{name}: {error.reason}" for name, error in self.attempts)
        super().__init__(
            message=f"All backends unavailable ({summary or 'no backends configured'})",
            code=ErrorCode.ALL_BACKENDS_EXHAUSTED,
            details={
                "attempts": [
                    {"backend": name, "code": error.code, "reason": error.reason}
                    for name, error in self.attempts
                ]
            },
        )

    @property
    def last_error(self) -> BackendError | None:
        """The failure reported by the last backend attempted."""
        return self.attempts[-1][1] if self.attempts else None


class CacheError(GatewayError):
    """Response cache store failed. Never surfaced to callers."""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            message=f"Cache {operation} failed: {reason}",
            code=ErrorCode.CACHE_ERROR,
            details={"operation": operation, "reason": reason},
        )


class UsageRecordingError(GatewayError):
    """Usage sink failed. Never surfaced to callers."""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Usage recording failed: {reason}",
            code=ErrorCode.USAGE_RECORDING_ERROR,
            details={"reason": reason},
        )


_TRANSIENT_STATUS = {408, 409, 425, 429}


def _status_of(exc: BaseException) -> int | None:
    for attr in ("status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 100 <= value < 600:
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _cause_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def classify_backend_error(backend: str, exc: BaseException) -> BackendError:
    """Map an exception raised by a backend client into the gateway taxonomy.

    Provider SDKs wrap transport failures, so the whole cause chain is
    inspected before falling back to the outermost exception's status.
    """
    if isinstance(exc, BackendError):
        return exc

    for error in _cause_chain(exc):
        if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
            return TransientBackendError(backend, f"timeout: {error}" if str(error) else "timeout")
        if isinstance(error, (httpx.TransportError, ConnectionError)):
            return TransientBackendError(backend, f"connection error: {error}")

    status = _status_of(exc)
    if status is not None:
        if status >= 500 or status in _TRANSIENT_STATUS:
            return TransientBackendError(backend, str(exc), status_code=status)
        return PermanentBackendError(backend, str(exc), status_code=status)

    if isinstance(exc, (ValueError, TypeError, NotImplementedError)):
        return PermanentBackendError(backend, f"{type(exc).__name__}: {exc}")

    return TransientBackendError(backend, f"{type(exc).__name__}: {exc}")
