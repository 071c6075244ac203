from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from psycopg_pool import AsyncConnectionPool

from core.app_config import AppConfig, normalize_config
from infra.nats_client import NATSClient
from infra.stores import JobStore
from infra.stores.pool import create_pool


@dataclass(frozen=True)
class StoreFactory:
    pool: AsyncConnectionPool
    schema: str

    def job_store(self) -> JobStore:
        return JobStore(pool=self.pool, schema=self.schema)


@dataclass(frozen=True)
class ServiceContext:
    config: AppConfig
    dsn: str
    pool: AsyncConnectionPool
    nats: Optional[NATSClient]
    stores: StoreFactory

    @classmethod
    def from_config(
        cls,
        config: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        application_name: Optional[str] = None,
    ) -> "ServiceContext":
        app_config = normalize_config(config)
        queue_cfg = app_config.queue
        pool = create_pool(
            queue_cfg.postgres_dsn,
            min_size=queue_cfg.pool_min_size,
            max_size=queue_cfg.pool_max_size,
            application_name=application_name,
        )
        nats = NATSClient(app_config.nats) if app_config.nats.enabled else None
        return cls(
            config=app_config,
            dsn=queue_cfg.postgres_dsn,
            pool=pool,
            nats=nats,
            stores=StoreFactory(pool=pool, schema=queue_cfg.schema_name),
        )

    async def open_pool(self) -> None:
        await self.pool.open()

    async def close_pool(self, *, timeout: Optional[float] = None) -> None:
        if timeout is None:
            await self.pool.close()
        else:
            await self.pool.close(timeout=timeout)
