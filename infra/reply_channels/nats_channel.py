from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.errors import ChannelResolutionError, DeliveryError

from .base import ReplyChannel, ReplyPayload, parse_reply_uri, scheme_matches, serialize_message

if TYPE_CHECKING:
    from infra.nats_client import NATSClient

logger = logging.getLogger("ReplyChannels")

NATS_SCHEME = "nats"


class NatsReplyChannel(ReplyChannel):
    """Publishes replies on a NATS subject: ``nats://agent.replies.team-a``."""

    scheme = NATS_SCHEME

    def __init__(self, nats: "NATSClient", uri: str):
        self.nats = nats
        subject = parse_reply_uri(uri).address.strip().strip("/")
        if not subject:
            raise ChannelResolutionError("Subject is required in nats:// URI", detail={"reply_to": uri})
        self.subject = subject

    @property
    def target(self) -> str:
        return self.subject

    async def send(self, message: ReplyPayload) -> None:
        payload = serialize_message(message)
        headers = {"AQ-Msg-Type": str(payload.get("type") or "reply")}
        correlation_id = payload.get("correlationId")
        if correlation_id:
            headers["AQ-Correlation-Id"] = str(correlation_id)
        logger.debug("Sending reply to NATS subject %s", self.subject)
        try:
            await self.nats.publish_json(self.subject, payload, headers)
        except Exception as exc:
            raise DeliveryError(
                f"NATS publish to '{self.subject}' failed: {exc}",
                detail={"subject": self.subject},
            ) from exc


class NatsReplyChannelFactory:
    def __init__(self, nats: "NATSClient"):
        self.nats = nats

    def matches(self, uri: str) -> bool:
        return scheme_matches(uri, NATS_SCHEME)

    def create(self, uri: str) -> NatsReplyChannel:
        return NatsReplyChannel(self.nats, uri)
