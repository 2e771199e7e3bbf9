"""Backend registry.

Holds at most one Backend per name for the lifetime of the registry.
Construction is lazy: the first reference to a name runs its factory, and
a backend without credentials is remembered as unconfigured so its
factory never runs again.
"""

from __future__ import annotations

import threading
from typing import Optional

import structlog

from gateway.exceptions import NotConfiguredError
from gateway.llm.backends import BACKEND_FACTORIES, Backend, BackendFactory
from gateway.llm.health import BackendHealth, HealthState
from gateway.models import BackendHandle
from gateway.settings import Settings

logger = structlog.get_logger(__name__)

_HEALTH_RANK = {
    HealthState.HEALTHY: 0,
    HealthState.DEGRADED: 1,
    HealthState.UNHEALTHY: 2,
}


class BackendRegistry:
    """Lazily built map of backend name to Backend.

    Example:
        registry = BackendRegistry(settings)
        registry.get_handle("openai").configured  # True if OPENAI_API_KEY is set
        registry.list_configured()  # ["openai", "groq"]
    """

    def __init__(
        self,
        settings: Settings,
        factories: Optional[dict[str, BackendFactory]] = None,
        health: Optional[BackendHealth] = None,
    ):
        self._settings = settings
        self._factories = dict(factories if factories is not None else BACKEND_FACTORIES)
        self._health = health or BackendHealth(unhealthy_after=settings.unhealthy_after_failures)
        # None marks a backend resolved as unconfigured
        self._backends: dict[str, Optional[Backend]] = {}
        self._lock = threading.Lock()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def health(self) -> BackendHealth:
        return self._health

    @property
    def names(self) -> list[str]:
        """Every known backend name in registration order."""
        order = [name for name in self._settings.backend_order if name in self._factories]
        order.extend(name for name in self._factories if name not in order)
        return order

    def _resolve(self, name: str) -> Optional[Backend]:
        if name in self._backends:
            return self._backends[name]

        factory = self._factories.get(name)
        backend: Optional[Backend] = None
        if factory is not None:
            try:
                backend = factory(self._settings)
            except Exception as e:
                logger.error("Backend construction failed", backend=name, error=str(e))
                backend = None

        with self._lock:
            # First writer wins; a racing constructor's result is discarded
            if name not in self._backends:
                self._backends[name] = backend
                logger.info(
                    "Backend resolved",
                    backend=name,
                    configured=backend is not None,
                )
            return self._backends[name]

    def get_handle(self, name: str) -> BackendHandle:
        """Capability handle for ``name``. Never raises."""
        backend = self._resolve(name)
        if backend is None:
            return BackendHandle(
                name=name,
                configured=False,
                supports_streaming=False,
            )
        return backend.handle()

    def get_backend(self, name: str) -> Backend:
        """The Backend registered under ``name``.

        Raises:
            NotConfiguredError: If the backend is unknown or has no credential.
        """
        backend = self._resolve(name)
        if backend is None:
            raise NotConfiguredError(name)
        return backend

    def is_configured(self, name: str) -> bool:
        return self._resolve(name) is not None

    def list_configured(self) -> list[str]:
        """Usable backend names, healthiest first.

        Within one health state the registration order is kept.
        """
        configured = [name for name in self.names if self.is_configured(name)]
        return sorted(configured, key=lambda name: _HEALTH_RANK[self._health.state(name)])

    def report_success(self, name: str) -> None:
        self._health.record_success(name)

    def report_failure(self, name: str, reason: str) -> None:
        self._health.record_failure(name, reason)
