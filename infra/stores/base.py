from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Sequence

from psycopg_pool import AsyncConnectionPool

from .pool import create_pool


class BaseStore:
    """SQL helpers over a psycopg pool that is either shared or owned.

    Each helper takes an optional ``conn`` so several statements can run
    inside one ``transaction()``.
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        pool: Optional[AsyncConnectionPool] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
    ) -> None:
        self._owns_pool = pool is None
        if pool is None:
            if not dsn:
                raise ValueError("dsn is required when pool is not provided")
            pool = create_pool(str(dsn), min_size=min_size, max_size=max_size)
        self.pool = pool

    async def open(self) -> None:
        if self._owns_pool:
            await self.pool.open()

    async def close(self, *, timeout: Optional[float] = None) -> None:
        if self._owns_pool:
            await (self.pool.close() if timeout is None else self.pool.close(timeout=timeout))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        async with self.pool.connection() as conn:
            async with conn.transaction():
                yield conn

    @asynccontextmanager
    async def _cursor(self, sql: str, params: Sequence[Any] | None, conn: Any) -> AsyncIterator[Any]:
        if conn is not None:
            yield await conn.execute(sql, tuple(params or ()))
            return
        async with self.pool.connection() as own:
            yield await own.execute(sql, tuple(params or ()))

    async def execute(self, sql: str, params: Sequence[Any] | None = None, *, conn: Any = None) -> int:
        async with self._cursor(sql, params, conn) as cur:
            return int(cur.rowcount or 0)

    async def fetch_one(self, sql: str, params: Sequence[Any] | None = None, *, conn: Any = None) -> Any:
        async with self._cursor(sql, params, conn) as cur:
            return await cur.fetchone()

    async def fetch_all(self, sql: str, params: Sequence[Any] | None = None, *, conn: Any = None) -> list[Any]:
        async with self._cursor(sql, params, conn) as cur:
            return await cur.fetchall()
