import asyncio
import logging
import signal
from typing import Any, Dict, Optional

from core.app_config import AppConfig, load_app_config
from core.errors import ConfigurationError
from core.utils import set_loop_policy
from infra.job_queue import JobQueue
from infra.reply_channels import (
    NatsReplyChannelFactory,
    QueueReplyChannelFactory,
    ReplyChannelRegistry,
    WebhookReplyChannelFactory,
)
from infra.service_runtime import ServiceBase

from .approval import ApprovalCoordinator
from .engine import AgentEngine, load_engine
from .settings import DispatcherSettings
from .worker import AgentDispatcher

set_loop_policy()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("AgentDispatcher")


class DispatcherService(ServiceBase):
    def __init__(
        self,
        cfg: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        engine: Optional[AgentEngine] = None,
    ) -> None:
        super().__init__(cfg)
        queue_cfg = self.config.queue
        self.job_store = self.register_store(self.ctx.stores.job_store())
        self.queue = JobQueue.from_config(self.job_store, queue_cfg)

        self.channels = ReplyChannelRegistry(
            [
                QueueReplyChannelFactory(self.queue),
                WebhookReplyChannelFactory(
                    timeout_seconds=self.config.webhook.timeout_seconds,
                    headers=self.config.webhook.headers,
                ),
            ]
        )
        if self.nats is not None:
            self.channels.register(NatsReplyChannelFactory(self.nats))

        self.settings = DispatcherSettings.from_config(self.config)
        self.coordinator = ApprovalCoordinator(self.queue, self.settings.default_hitl)
        if engine is None:
            if not self.config.dispatcher.engine:
                raise ConfigurationError("dispatcher.engine is not set (expected 'module:attribute')")
            engine = load_engine(self.config.dispatcher.engine)
        self.dispatcher = AgentDispatcher(
            self.queue,
            self.channels,
            self.coordinator,
            engine,
            self.settings,
        )
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        await self.open()
        if not self.settings.agents:
            logger.warning("No agents configured; nothing to dispatch")
        await self.dispatcher.start()
        self.queue.start_maintenance()

    def request_stop(self) -> None:
        self._stopped.set()

    async def run(self) -> None:
        await self.start()
        try:
            await self._stopped.wait()
        finally:
            await self.dispatcher.stop(timeout=self.config.queue.shutdown_timeout_seconds)

    async def close(self) -> None:
        await self.queue.stop(graceful=False)
        await super().close()


async def main() -> None:
    cfg = load_app_config()
    service = DispatcherService(cfg)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.request_stop)
        except NotImplementedError:
            pass
    try:
        await service.run()
    finally:
        await service.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
