from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg_pool import AsyncConnectionPool

from core.config_defaults import (
    DEFAULT_QUEUE_EXPIRE_IN_SECONDS,
    DEFAULT_QUEUE_RETRY_BACKOFF,
    DEFAULT_QUEUE_RETRY_DELAY_SECONDS,
    DEFAULT_QUEUE_RETRY_LIMIT,
    DEFAULT_QUEUE_SCHEMA,
)
from core.errors import QueueError
from core.utils import new_id

from .base import BaseStore

logger = logging.getLogger("JobStore")

_SCHEMA_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

JOB_STATES = ("created", "retry", "active", "completed", "failed")


@dataclass(frozen=True, slots=True)
class QueueSpec:
    name: str
    retry_limit: int
    retry_delay_seconds: int
    retry_backoff: bool
    expire_in_seconds: int
    dead_letter: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Job:
    id: str
    name: str
    data: Any
    priority: int = 0
    retry_count: int = 0
    retry_limit: int = 0
    created_on: Optional[datetime] = None
    started_on: Optional[datetime] = None
    state: str = "active"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            id=str(row["id"]),
            name=str(row["name"]),
            data=row.get("data"),
            priority=int(row.get("priority") or 0),
            retry_count=int(row.get("retry_count") or 0),
            retry_limit=int(row.get("retry_limit") or 0),
            created_on=row.get("created_on"),
            started_on=row.get("started_on"),
            state=str(row.get("state") or "active"),
        )


class JobStore(BaseStore):
    """Durable named queues on Postgres.

    Jobs move ``created -> active -> completed`` on success. A failed attempt goes
    back to ``retry`` until the job's retry limit is used up, then ends ``failed``
    and is copied onto the queue's dead-letter queue when one is configured.
    Exclusive fetch relies on ``FOR UPDATE SKIP LOCKED``, so any number of
    workers may poll the same queue.
    """

    def __init__(
        self,
        dsn: str | None = None,
        *,
        pool: AsyncConnectionPool | None = None,
        schema: str = DEFAULT_QUEUE_SCHEMA,
        min_size: int | None = None,
        max_size: int | None = None,
    ):
        if not _SCHEMA_RE.match(schema or ""):
            raise ValueError(f"invalid queue schema name: {schema!r}")
        super().__init__(dsn, pool=pool, min_size=min_size, max_size=max_size)
        self.schema = schema

    async def open(self) -> None:
        await super().open()
        row = await self.fetch_one(
            "SELECT to_regclass(%s) IS NOT NULL AS has_job",
            (f"{self.schema}.job",),
        )
        if not (row and row.get("has_job")):
            raise RuntimeError(
                f"Missing required schema: {self.schema}.job. "
                "Run scripts/setup/init_db.py or call JobStore.ensure_schema()."
            )

    def schema_ddl(self) -> List[str]:
        s = self.schema
        return [
            f"CREATE SCHEMA IF NOT EXISTS {s}",
            f"""
            CREATE TABLE IF NOT EXISTS {s}.queue (
                name text PRIMARY KEY,
                retry_limit integer NOT NULL DEFAULT {DEFAULT_QUEUE_RETRY_LIMIT},
                retry_delay integer NOT NULL DEFAULT {DEFAULT_QUEUE_RETRY_DELAY_SECONDS},
                retry_backoff boolean NOT NULL DEFAULT false,
                expire_seconds integer NOT NULL DEFAULT {DEFAULT_QUEUE_EXPIRE_IN_SECONDS},
                dead_letter text,
                created_on timestamptz NOT NULL DEFAULT now()
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {s}.job (
                id text PRIMARY KEY,
                name text NOT NULL REFERENCES {s}.queue(name) ON DELETE CASCADE,
                data jsonb,
                state text NOT NULL DEFAULT 'created'
                    CHECK (state IN ('created', 'retry', 'active', 'completed', 'failed')),
                priority integer NOT NULL DEFAULT 0,
                retry_count integer NOT NULL DEFAULT 0,
                retry_limit integer NOT NULL DEFAULT 0,
                retry_delay integer NOT NULL DEFAULT 0,
                retry_backoff boolean NOT NULL DEFAULT false,
                expire_seconds integer NOT NULL DEFAULT {DEFAULT_QUEUE_EXPIRE_IN_SECONDS},
                start_after timestamptz NOT NULL DEFAULT now(),
                started_on timestamptz,
                created_on timestamptz NOT NULL DEFAULT now(),
                completed_on timestamptz,
                output jsonb
            )
            """,
            f"""
            CREATE INDEX IF NOT EXISTS job_fetch_idx
                ON {s}.job (name, priority DESC, created_on, id)
                WHERE state IN ('created', 'retry')
            """,
            f"""
            CREATE INDEX IF NOT EXISTS job_active_idx
                ON {s}.job (started_on)
                WHERE state = 'active'
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {s}.archive (
                LIKE {s}.job,
                archived_on timestamptz NOT NULL DEFAULT now()
            )
            """,
        ]

    async def ensure_schema(self) -> None:
        async with self.transaction() as conn:
            for statement in self.schema_ddl():
                await conn.execute(statement)
        logger.info("Queue schema ready: %s", self.schema)

    async def create_queue(
        self,
        name: str,
        *,
        retry_limit: int = DEFAULT_QUEUE_RETRY_LIMIT,
        retry_delay_seconds: int = DEFAULT_QUEUE_RETRY_DELAY_SECONDS,
        retry_backoff: bool = DEFAULT_QUEUE_RETRY_BACKOFF,
        expire_in_seconds: int = DEFAULT_QUEUE_EXPIRE_IN_SECONDS,
        dead_letter: Optional[str] = None,
    ) -> bool:
        """Create a queue if it does not exist yet; returns True when it was created."""
        if not name:
            raise ValueError("queue name is required")
        sql = f"""
            INSERT INTO {self.schema}.queue (
                name, retry_limit, retry_delay, retry_backoff, expire_seconds, dead_letter
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (name) DO NOTHING
            RETURNING name
        """
        async with self.transaction() as conn:
            if dead_letter:
                await self.fetch_one(
                    sql,
                    (dead_letter, int(retry_limit), int(retry_delay_seconds), bool(retry_backoff), int(expire_in_seconds), None),
                    conn=conn,
                )
            row = await self.fetch_one(
                sql,
                (name, int(retry_limit), int(retry_delay_seconds), bool(retry_backoff), int(expire_in_seconds), dead_letter),
                conn=conn,
            )
        if row:
            logger.info("Queue created: %s dead_letter=%s", name, dead_letter)
        return bool(row)

    async def delete_queue(self, name: str) -> bool:
        row = await self.fetch_one(
            f"DELETE FROM {self.schema}.queue WHERE name=%s RETURNING name",
            (name,),
        )
        return bool(row)

    async def get_queue(self, name: str) -> Optional[QueueSpec]:
        row = await self.fetch_one(
            f"""
            SELECT name, retry_limit, retry_delay, retry_backoff, expire_seconds, dead_letter
            FROM {self.schema}.queue
            WHERE name=%s
            """,
            (name,),
        )
        if not row:
            return None
        return QueueSpec(
            name=row["name"],
            retry_limit=int(row["retry_limit"]),
            retry_delay_seconds=int(row["retry_delay"]),
            retry_backoff=bool(row["retry_backoff"]),
            expire_in_seconds=int(row["expire_seconds"]),
            dead_letter=row.get("dead_letter"),
        )

    async def send(
        self,
        name: str,
        data: Any,
        *,
        priority: int = 0,
        start_after: Optional[datetime] = None,
        retry_limit: Optional[int] = None,
        conn: Any = None,
    ) -> str:
        job_id = new_id()
        row = await self.fetch_one(
            f"""
            INSERT INTO {self.schema}.job (
                id, name, data, priority, retry_limit, retry_delay, retry_backoff,
                expire_seconds, start_after
            )
            SELECT %s, q.name, %s::jsonb, %s, COALESCE(%s, q.retry_limit), q.retry_delay,
                   q.retry_backoff, q.expire_seconds, COALESCE(%s::timestamptz, now())
            FROM {self.schema}.queue q
            WHERE q.name=%s
            RETURNING id
            """,
            (job_id, json.dumps(data), int(priority), retry_limit, start_after, name),
            conn=conn,
        )
        if not row:
            raise QueueError(f"Queue '{name}' does not exist", detail={"queue": name})
        return str(row["id"])

    async def fetch(self, name: str, *, batch_size: int = 1) -> List[Job]:
        rows = await self.fetch_all(
            f"""
            WITH next AS (
                SELECT id
                FROM {self.schema}.job
                WHERE name=%s
                  AND state IN ('created', 'retry')
                  AND start_after <= now()
                ORDER BY priority DESC, created_on ASC, id ASC
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            UPDATE {self.schema}.job j
            SET state='active',
                started_on=now()
            FROM next
            WHERE j.id = next.id
            RETURNING j.id, j.name, j.data, j.state, j.priority, j.retry_count,
                      j.retry_limit, j.created_on, j.started_on
            """,
            (name, max(1, int(batch_size))),
        )
        jobs = [Job.from_row(row) for row in rows]
        # UPDATE ... RETURNING does not keep the CTE order.
        jobs.sort(key=lambda job: (-job.priority, job.created_on or datetime.min, job.id))
        return jobs

    async def complete(self, name: str, job_id: str, data: Any = None) -> bool:
        row = await self.fetch_one(
            f"""
            UPDATE {self.schema}.job
            SET state='completed',
                completed_on=now(),
                output=%s::jsonb
            WHERE name=%s AND id=%s AND state='active'
            RETURNING id
            """,
            (json.dumps(data) if data is not None else None, name, job_id),
        )
        return bool(row)

    async def fail(self, name: str, job_id: str, data: Any = None) -> bool:
        async with self.transaction() as conn:
            return await self._fail_with_conn(conn, name, job_id, data)

    async def _fail_with_conn(self, conn: Any, name: str, job_id: str, data: Any) -> bool:
        # SET expressions all see the pre-update row.
        row = await self.fetch_one(
            f"""
            UPDATE {self.schema}.job
            SET state = CASE WHEN retry_count < retry_limit THEN 'retry' ELSE 'failed' END,
                retry_count = CASE WHEN retry_count < retry_limit THEN retry_count + 1 ELSE retry_count END,
                start_after = CASE
                    WHEN retry_count < retry_limit THEN now() + make_interval(secs => CASE
                        WHEN retry_backoff THEN retry_delay * power(2, retry_count)
                        ELSE retry_delay
                    END)
                    ELSE start_after
                END,
                completed_on = CASE WHEN retry_count < retry_limit THEN NULL ELSE now() END,
                output = %s::jsonb
            WHERE name=%s AND id=%s AND state='active'
            RETURNING id, name, data, state, priority, retry_count
            """,
            (json.dumps(data) if data is not None else None, name, job_id),
            conn=conn,
        )
        if not row:
            return False
        if row["state"] == "retry":
            logger.info("Job %s on %s scheduled for retry %s", job_id, name, row["retry_count"])
            return True

        queue = await self.fetch_one(
            f"SELECT dead_letter FROM {self.schema}.queue WHERE name=%s",
            (name,),
            conn=conn,
        )
        dead_letter = queue.get("dead_letter") if queue else None
        if dead_letter:
            try:
                dead_id = await self.send(dead_letter, row["data"], priority=int(row["priority"] or 0), conn=conn)
            except QueueError:
                logger.warning("Dead-letter queue %s missing; job %s dropped from %s", dead_letter, job_id, name)
            else:
                logger.warning("Job %s on %s failed permanently; dead-lettered as %s", job_id, name, dead_id)
        else:
            logger.warning("Job %s on %s failed permanently", job_id, name)
        return True

    async def expire_active_jobs(self) -> int:
        """Fail active jobs whose lease ran out, e.g. after a worker crash."""
        async with self.transaction() as conn:
            rows = await self.fetch_all(
                f"""
                SELECT id, name
                FROM {self.schema}.job
                WHERE state='active'
                  AND started_on + make_interval(secs => expire_seconds) < now()
                FOR UPDATE SKIP LOCKED
                """,
                conn=conn,
            )
            expired = 0
            for row in rows:
                payload = {
                    "code": "job_expired",
                    "message": "Job lease expired before completion",
                    "source": "maintenance",
                }
                if await self._fail_with_conn(conn, row["name"], row["id"], payload):
                    expired += 1
        if expired:
            logger.warning("Expired %s active job(s)", expired)
        return expired

    async def archive_finished(self, *, older_than_seconds: float) -> int:
        return await self.execute(
            f"""
            WITH moved AS (
                DELETE FROM {self.schema}.job
                WHERE state IN ('completed', 'failed')
                  AND completed_on < now() - make_interval(secs => %s)
                RETURNING *
            )
            INSERT INTO {self.schema}.archive
            SELECT moved.*, now() FROM moved
            """,
            (float(older_than_seconds),),
        )

    async def purge_archive(self, *, older_than_seconds: float) -> int:
        return await self.execute(
            f"DELETE FROM {self.schema}.archive WHERE archived_on < now() - make_interval(secs => %s)",
            (float(older_than_seconds),),
        )

    async def queue_size(self, name: str) -> int:
        row = await self.fetch_one(
            f"""
            SELECT count(*) AS size
            FROM {self.schema}.job
            WHERE name=%s AND state IN ('created', 'retry')
            """,
            (name,),
        )
        return int(row["size"]) if row else 0
