from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Set

from core.app_config import QueueConfig
from core.config_defaults import (
    DEFAULT_QUEUE_ARCHIVE_COMPLETED_AFTER_SECONDS,
    DEFAULT_QUEUE_DELETE_AFTER_SECONDS,
    DEFAULT_QUEUE_EXPIRE_IN_SECONDS,
    DEFAULT_QUEUE_MAINTENANCE_INTERVAL_SECONDS,
    DEFAULT_QUEUE_POLL_INTERVAL_SECONDS,
    DEFAULT_QUEUE_RETRY_BACKOFF,
    DEFAULT_QUEUE_RETRY_DELAY_SECONDS,
    DEFAULT_QUEUE_RETRY_LIMIT,
    DEFAULT_QUEUE_SHUTDOWN_TIMEOUT_SECONDS,
)
from core.errors import normalize_error
from infra.observability.otel import get_tracer, mark_span_error, start_span, traced
from infra.stores.job_store import Job, JobStore, QueueSpec

logger = logging.getLogger("JobQueue")
_TRACER = get_tracer("infra.job_queue")

JobHandler = Callable[[Job], Awaitable[Any]]


@dataclass(eq=False)
class WorkerHandle:
    """Handle returned by ``JobQueue.work`` for lifecycle management."""

    queue_name: str
    task: asyncio.Task
    stopping: asyncio.Event = field(default_factory=asyncio.Event)

    def stop(self) -> None:
        """Ask the loop to exit after the job it is currently handling."""
        self.stopping.set()

    def cancel(self) -> None:
        self.stopping.set()
        self.task.cancel()

    async def wait(self, cancel_ok: bool = True) -> None:
        try:
            await self.task
        except asyncio.CancelledError:
            if not cancel_ok:
                raise


class JobQueue:
    """Worker-facing facade over ``JobStore``.

    ``work`` runs one polling task per subscription. Each task handles the jobs
    it fetched strictly one after another, so ``batch_size=1`` gives at most one
    in-flight job per subscription. A handler that returns marks the job
    completed (its return value becomes the job output); a handler that raises
    fails the attempt and leaves retry and dead-lettering to the store.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        poll_interval_seconds: float = DEFAULT_QUEUE_POLL_INTERVAL_SECONDS,
        retry_limit: int = DEFAULT_QUEUE_RETRY_LIMIT,
        retry_delay_seconds: int = DEFAULT_QUEUE_RETRY_DELAY_SECONDS,
        retry_backoff: bool = DEFAULT_QUEUE_RETRY_BACKOFF,
        expire_in_seconds: int = DEFAULT_QUEUE_EXPIRE_IN_SECONDS,
        archive_completed_after_seconds: float = DEFAULT_QUEUE_ARCHIVE_COMPLETED_AFTER_SECONDS,
        delete_after_seconds: float = DEFAULT_QUEUE_DELETE_AFTER_SECONDS,
        maintenance_interval_seconds: float = DEFAULT_QUEUE_MAINTENANCE_INTERVAL_SECONDS,
        shutdown_timeout_seconds: float = DEFAULT_QUEUE_SHUTDOWN_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.retry_limit = int(retry_limit)
        self.retry_delay_seconds = int(retry_delay_seconds)
        self.retry_backoff = bool(retry_backoff)
        self.expire_in_seconds = int(expire_in_seconds)
        self.archive_completed_after_seconds = float(archive_completed_after_seconds)
        self.delete_after_seconds = float(delete_after_seconds)
        self.maintenance_interval_seconds = float(maintenance_interval_seconds)
        self.shutdown_timeout_seconds = float(shutdown_timeout_seconds)
        self._workers: Set[WorkerHandle] = set()
        self._maintenance_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, store: JobStore, cfg: QueueConfig) -> "JobQueue":
        return cls(
            store,
            poll_interval_seconds=cfg.poll_interval_seconds,
            retry_limit=cfg.retry_limit,
            retry_delay_seconds=cfg.retry_delay_seconds,
            retry_backoff=cfg.retry_backoff,
            expire_in_seconds=cfg.expire_in_seconds,
            archive_completed_after_seconds=cfg.archive_completed_after_seconds,
            delete_after_seconds=cfg.delete_after_seconds,
            maintenance_interval_seconds=cfg.maintenance_interval_seconds,
            shutdown_timeout_seconds=cfg.shutdown_timeout_seconds,
        )

    async def create_queue(self, name: str, *, dead_letter: Optional[str] = None) -> bool:
        return await self.store.create_queue(
            name,
            retry_limit=self.retry_limit,
            retry_delay_seconds=self.retry_delay_seconds,
            retry_backoff=self.retry_backoff,
            expire_in_seconds=self.expire_in_seconds,
            dead_letter=dead_letter,
        )

    async def delete_queue(self, name: str) -> bool:
        return await self.store.delete_queue(name)

    async def get_queue(self, name: str) -> Optional[QueueSpec]:
        return await self.store.get_queue(name)

    @traced(
        _TRACER,
        "queue.send",
        attributes_getter=lambda args: {"messaging.destination": args.get("name")},
    )
    async def send(
        self,
        name: str,
        data: Any,
        *,
        priority: int = 0,
        start_after: Optional[datetime] = None,
        retry_limit: Optional[int] = None,
    ) -> str:
        return await self.store.send(
            name,
            data,
            priority=priority,
            start_after=start_after,
            retry_limit=retry_limit,
        )

    async def fetch(self, name: str, *, batch_size: int = 1) -> list[Job]:
        return await self.store.fetch(name, batch_size=batch_size)

    async def fetch_one(self, name: str) -> Optional[Job]:
        jobs = await self.store.fetch(name, batch_size=1)
        return jobs[0] if jobs else None

    async def complete(self, name: str, job_id: str, data: Any = None) -> bool:
        return await self.store.complete(name, job_id, data)

    async def fail(self, name: str, job_id: str, data: Any = None) -> bool:
        return await self.store.fail(name, job_id, data)

    async def queue_size(self, name: str) -> int:
        return await self.store.queue_size(name)

    def work(
        self,
        name: str,
        handler: JobHandler,
        *,
        batch_size: int = 1,
        poll_interval_seconds: Optional[float] = None,
    ) -> WorkerHandle:
        interval = float(poll_interval_seconds if poll_interval_seconds is not None else self.poll_interval_seconds)
        size = max(1, int(batch_size))
        stopping = asyncio.Event()

        async def worker_loop() -> None:
            while not stopping.is_set():
                try:
                    jobs = await self.store.fetch(name, batch_size=size)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Fetch failed on %s: %s", name, exc)
                    jobs = []
                if not jobs:
                    await _idle(stopping, interval)
                    continue
                for job in jobs:
                    await self._handle_job(name, job, handler)

        task = asyncio.create_task(worker_loop(), name=f"job_worker:{name}")
        handle = WorkerHandle(queue_name=name, task=task, stopping=stopping)
        self._workers.add(handle)
        task.add_done_callback(lambda _t: self._workers.discard(handle))
        logger.info("Worker started on %s (batch_size=%s poll=%.2fs)", name, size, interval)
        return handle

    async def _handle_job(self, name: str, job: Job, handler: JobHandler) -> None:
        with start_span(
            _TRACER,
            "queue.process",
            attributes={
                "messaging.destination": name,
                "messaging.message_id": job.id,
                "aq.retry_count": job.retry_count,
            },
        ) as span:
            try:
                output = await handler(job)
            except asyncio.CancelledError:
                # The job stays active; lease expiry hands it back to the queue.
                raise
            except Exception as exc:  # noqa: BLE001
                mark_span_error(span, exc)
                logger.error("Job %s on %s failed: %s", job.id, name, exc)
                try:
                    await self.store.fail(name, job.id, normalize_error(exc, source="worker"))
                except Exception:  # noqa: BLE001
                    logger.exception("Could not mark job %s on %s failed", job.id, name)
                return
            try:
                await self.store.complete(name, job.id, output)
            except Exception:  # noqa: BLE001
                logger.exception("Could not mark job %s on %s completed", job.id, name)

    async def run_maintenance(self) -> None:
        expired = await self.store.expire_active_jobs()
        archived = await self.store.archive_finished(older_than_seconds=self.archive_completed_after_seconds)
        purged = await self.store.purge_archive(older_than_seconds=self.delete_after_seconds)
        if expired or archived or purged:
            logger.info("Maintenance: expired=%s archived=%s purged=%s", expired, archived, purged)

    def start_maintenance(self) -> None:
        if self._maintenance_task is not None and not self._maintenance_task.done():
            return

        async def maintenance_loop() -> None:
            while True:
                try:
                    await self.run_maintenance()
                except Exception as exc:  # noqa: BLE001
                    logger.error("Maintenance failed: %s", exc)
                await asyncio.sleep(self.maintenance_interval_seconds)

        self._maintenance_task = asyncio.create_task(maintenance_loop(), name="job_queue_maintenance")

    async def stop(self, *, graceful: bool = True, timeout: Optional[float] = None) -> None:
        """Stop all workers.

        Graceful stop lets in-flight handlers finish for up to ``timeout`` seconds
        before the remaining tasks are cancelled.
        """
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            await asyncio.gather(self._maintenance_task, return_exceptions=True)
            self._maintenance_task = None

        handles = list(self._workers)
        if not handles:
            return
        for handle in handles:
            handle.stop()
        tasks = [handle.task for handle in handles]
        if graceful:
            wait_for = self.shutdown_timeout_seconds if timeout is None else float(timeout)
            _done, pending = await asyncio.wait(tasks, timeout=wait_for)
            if pending:
                logger.warning("%s worker(s) still busy after %.1fs; cancelling", len(pending), wait_for)
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Stopped %s worker(s)", len(handles))


async def _idle(stopping: asyncio.Event, interval: float) -> None:
    try:
        await asyncio.wait_for(stopping.wait(), timeout=interval)
    except asyncio.TimeoutError:
        pass
