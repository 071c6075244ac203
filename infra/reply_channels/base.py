from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Protocol, Union, runtime_checkable

from pydantic import BaseModel

from core.errors import ChannelResolutionError
from core.messages import AgentJobError, AgentJobResult, ApprovalRequest

ReplyPayload = Union[AgentJobResult, AgentJobError, ApprovalRequest]

_URI_RE = re.compile(r"^([a-z0-9+.-]+)://(.*)$", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True, slots=True)
class ReplyUri:
    scheme: str
    address: str
    raw: str


def parse_reply_uri(uri: str) -> ReplyUri:
    """Split ``scheme://rest``; the scheme is lower-cased, the rest kept verbatim."""
    match = _URI_RE.match(str(uri or "").strip())
    if not match:
        raise ChannelResolutionError(f"Invalid replyTo URI: {uri}", detail={"reply_to": uri})
    scheme, rest = match.groups()
    return ReplyUri(scheme=scheme.lower(), address=rest, raw=str(uri))


def scheme_matches(uri: str, scheme: str) -> bool:
    return str(uri or "").lower().startswith(f"{scheme.lower()}://")


def serialize_message(message: ReplyPayload | Dict[str, Any]) -> Dict[str, Any]:
    if isinstance(message, BaseModel):
        return message.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(message, dict):
        return dict(message)
    raise TypeError(f"unsupported reply message type: {type(message).__name__}")


class ReplyChannel(ABC):
    """Delivers reply messages to one destination fixed at construction."""

    scheme: ClassVar[str] = ""

    def matches(self, uri: str) -> bool:
        return scheme_matches(uri, self.scheme)

    @property
    @abstractmethod
    def target(self) -> str:
        """Destination this channel delivers to (queue name, URL, subject)."""

    @abstractmethod
    async def send(self, message: ReplyPayload) -> None:
        """Deliver one message; raises ``DeliveryError`` when delivery fails."""


@runtime_checkable
class ReplyChannelFactory(Protocol):
    def matches(self, uri: str) -> bool: ...

    def create(self, uri: str) -> ReplyChannel: ...
