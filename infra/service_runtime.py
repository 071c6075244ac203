from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from core.app_config import AppConfig
from infra.observability.otel import init_otel, shutdown_otel
from infra.service_context import ServiceContext
from infra.stores.base import BaseStore


logger = logging.getLogger("ServiceRuntime")


async def _close_logged(label: str, close: Callable[[], Awaitable[Any]]) -> None:
    try:
        await close()
    except Exception as exc:  # noqa: BLE001
        logger.warning("%s close failed: %s", label, exc, exc_info=True)


@dataclass
class ServiceRuntime:
    """Opens and closes the shared resources of one service process.

    Order on open: tracing, connection pool, NATS (when enabled), stores.
    Close runs in reverse and keeps going past individual failures; only a
    pool close error propagates.
    """

    ctx: ServiceContext
    service_name: Optional[str] = None
    stores: list[BaseStore] = field(default_factory=list)
    _opened: bool = False
    _tracing: bool = False

    def register_store(self, store: BaseStore) -> BaseStore:
        self.stores.append(store)
        return store

    async def open(self) -> None:
        if self._opened:
            return
        self._tracing = init_otel(self.ctx.config.observability.otel, service_name=self.service_name)
        await self.ctx.open_pool()
        if self.ctx.nats is not None:
            await self.ctx.nats.connect()
        for store in self.stores:
            await store.open()
        self._opened = True

    async def close(self, *, pool_timeout: Optional[float] = None) -> None:
        if not self._opened:
            return
        self._opened = False
        for store in reversed(self.stores):
            await _close_logged(type(store).__name__, store.close)
        if self.ctx.nats is not None:
            await _close_logged("NATS", self.ctx.nats.close)
        try:
            await self.ctx.close_pool(timeout=pool_timeout)
        finally:
            if self._tracing:
                self._tracing = False
                shutdown_otel()


class ServiceBase:
    """Base for long-running services that share one ``ServiceRuntime``."""

    def __init__(
        self,
        config: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        service_name: Optional[str] = None,
    ) -> None:
        name = service_name or self.__class__.__name__
        self.runtime = ServiceRuntime(ServiceContext.from_config(config, application_name=name), service_name=name)
        self.ctx = self.runtime.ctx
        self.config = self.ctx.config
        self.nats = self.ctx.nats

    def register_store(self, store: BaseStore) -> BaseStore:
        return self.runtime.register_store(store)

    async def open(self) -> None:
        await self.runtime.open()

    async def close(self) -> None:
        await self.runtime.close()
