"""Reply delivery: URI scheme -> channel factories."""

from .base import (
    ReplyChannel,
    ReplyChannelFactory,
    ReplyPayload,
    ReplyUri,
    parse_reply_uri,
    scheme_matches,
    serialize_message,
)
from .nats_channel import NatsReplyChannel, NatsReplyChannelFactory
from .queue_channel import QueueReplyChannel, QueueReplyChannelFactory, queue_name_from_uri
from .registry import ReplyChannelRegistry
from .webhook_channel import WebhookReplyChannel, WebhookReplyChannelFactory

__all__ = [
    "ReplyChannel",
    "ReplyChannelFactory",
    "ReplyPayload",
    "ReplyUri",
    "parse_reply_uri",
    "scheme_matches",
    "serialize_message",
    "ReplyChannelRegistry",
    "QueueReplyChannel",
    "QueueReplyChannelFactory",
    "queue_name_from_uri",
    "WebhookReplyChannel",
    "WebhookReplyChannelFactory",
    "NatsReplyChannel",
    "NatsReplyChannelFactory",
]
