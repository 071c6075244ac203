from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Set

from core.errors import ChannelResolutionError, DeliveryError

from .base import ReplyChannel, ReplyPayload, parse_reply_uri, scheme_matches, serialize_message

if TYPE_CHECKING:
    from infra.job_queue import JobQueue

logger = logging.getLogger("ReplyChannels")

QUEUE_SCHEME = "queue"


def queue_name_from_uri(uri: str) -> str:
    """``queue://name`` -> ``name``. A leading slash and any query string are dropped."""
    address = parse_reply_uri(uri).address
    name = address.split("?", 1)[0].lstrip("/")
    if not name:
        raise ChannelResolutionError("Queue name is required in queue:// URI", detail={"reply_to": uri})
    return name


class QueueReplyChannel(ReplyChannel):
    """Publishes replies as jobs on a named durable queue."""

    scheme = QUEUE_SCHEME

    def __init__(self, queue: "JobQueue", uri: str, *, known_queues: Set[str] | None = None):
        self.queue = queue
        self.queue_name = queue_name_from_uri(uri)
        self._known_queues = known_queues if known_queues is not None else set()

    @property
    def target(self) -> str:
        return self.queue_name

    async def send(self, message: ReplyPayload) -> None:
        logger.debug("Sending reply to queue %s", self.queue_name)
        try:
            if self.queue_name not in self._known_queues:
                await self.queue.create_queue(self.queue_name)
                self._known_queues.add(self.queue_name)
            await self.queue.send(self.queue_name, serialize_message(message))
        except DeliveryError:
            raise
        except Exception as exc:
            raise DeliveryError(
                f"Queue delivery to '{self.queue_name}' failed: {exc}",
                detail={"queue": self.queue_name},
            ) from exc


class QueueReplyChannelFactory:
    def __init__(self, queue: "JobQueue"):
        self.queue = queue
        # Shared across channels so each destination queue is created once per process.
        self._known_queues: Set[str] = set()

    def matches(self, uri: str) -> bool:
        return scheme_matches(uri, QUEUE_SCHEME)

    def create(self, uri: str) -> QueueReplyChannel:
        return QueueReplyChannel(self.queue, uri, known_queues=self._known_queues)
