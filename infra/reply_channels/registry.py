from __future__ import annotations

import logging
from typing import Iterable, List, Tuple

from core.errors import ChannelResolutionError

from .base import ReplyChannel, ReplyChannelFactory, ReplyPayload

logger = logging.getLogger("ReplyChannels")


class ReplyChannelRegistry:
    """Ordered set of channel factories; the first factory that matches a URI wins."""

    def __init__(self, factories: Iterable[ReplyChannelFactory] = ()):
        self._factories: List[ReplyChannelFactory] = []
        for factory in factories:
            self.register(factory)

    @property
    def factories(self) -> Tuple[ReplyChannelFactory, ...]:
        return tuple(self._factories)

    def register(self, factory: ReplyChannelFactory) -> None:
        if not isinstance(factory, ReplyChannelFactory):
            raise TypeError(f"not a reply channel factory: {factory!r}")
        self._factories.append(factory)
        logger.debug("Registered reply channel factory %s", type(factory).__name__)

    def resolve(self, reply_to: str) -> ReplyChannel:
        for factory in self._factories:
            if factory.matches(reply_to):
                return factory.create(reply_to)
        raise ChannelResolutionError(
            f"No reply channel factory found for URI: {reply_to}",
            detail={"reply_to": reply_to},
        )

    def can_resolve(self, reply_to: str) -> bool:
        return any(factory.matches(reply_to) for factory in self._factories)

    async def send(self, reply_to: str, message: ReplyPayload) -> None:
        channel = self.resolve(reply_to)
        try:
            await channel.send(message)
        except Exception as exc:
            logger.error("Delivery to %s failed: %s", reply_to, exc)
            raise
