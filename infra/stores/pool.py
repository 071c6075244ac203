from __future__ import annotations

from typing import Any, Dict, Optional

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool


def create_pool(
    dsn: str,
    *,
    min_size: Optional[int] = None,
    max_size: Optional[int] = None,
    application_name: Optional[str] = None,
) -> AsyncConnectionPool:
    conn_kwargs: Dict[str, Any] = {"row_factory": dict_row}
    if application_name:
        conn_kwargs["application_name"] = application_name
    pool_kwargs: Dict[str, Any] = {"open": False, "kwargs": conn_kwargs}
    if min_size is not None:
        pool_kwargs["min_size"] = int(min_size)
    if max_size is not None:
        pool_kwargs["max_size"] = int(max_size)
    return AsyncConnectionPool(dsn, **pool_kwargs)
