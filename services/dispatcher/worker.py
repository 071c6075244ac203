from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from core.app_config import AgentSpec
from core.errors import AgentQueueError, ChannelResolutionError, DeliveryError
from core.messages import AgentJobError, AgentJobRequest, AgentJobResult, RequestOrigin
from core.queue_names import agent_dead_letter_queue, agent_request_queue
from infra.job_queue import JobQueue, WorkerHandle
from infra.observability.otel import get_tracer, mark_span_error, start_span
from infra.reply_channels.base import ReplyChannel
from infra.reply_channels.registry import ReplyChannelRegistry
from infra.stores.job_store import Job

from .approval import ApprovalCoordinator, ToolDecision
from .engine import AbortSignal, AgentEngine, ToolPermissionCallback, build_engine_options, run_agent
from .settings import DispatcherSettings

logger = logging.getLogger("AgentDispatcher")
_TRACER = get_tracer("services.dispatcher.worker")

AgentJobResponse = Union[AgentJobResult, AgentJobError]


class AgentDispatcher:
    """Runs one queue subscription per configured agent.

    Every subscription handles a single job at a time, so runs of the same agent
    never overlap while different agents proceed independently.

    Outcome per job:
    - payload fails validation: an ``invalid_request`` reply when its replyTo resolves, else the job fails
    - reply channel cannot be resolved: the job fails (queue retry/dead-letter)
    - agent not configured or agent run fails: an ``error`` reply, job completes
    - agent run succeeds: a ``result`` reply, job completes
    - the reply itself cannot be delivered: the job fails
    """

    def __init__(
        self,
        queue: JobQueue,
        channels: ReplyChannelRegistry,
        coordinator: ApprovalCoordinator,
        engine: AgentEngine,
        settings: DispatcherSettings,
    ):
        self.queue = queue
        self.channels = channels
        self.coordinator = coordinator
        self.engine = engine
        self.settings = settings
        self._workers: Dict[str, WorkerHandle] = {}

    @property
    def workers(self) -> Dict[str, WorkerHandle]:
        return dict(self._workers)

    async def start(self) -> None:
        for agent_name in self.settings.agents:
            queue_name = agent_request_queue(agent_name)
            dead_letter = agent_dead_letter_queue(agent_name) if self.settings.dead_letter else None
            await self.queue.create_queue(queue_name, dead_letter=dead_letter)
            logger.info("Starting worker for agent %r on queue %r", agent_name, queue_name)
            self._workers[agent_name] = self.queue.work(queue_name, self.process_job, batch_size=1)
        logger.info("Dispatcher started with %s agent worker(s)", len(self._workers))

    async def stop(self, *, timeout: Optional[float] = None) -> None:
        logger.info("Stopping %s worker(s)...", len(self._workers))
        handles = list(self._workers.values())
        self._workers.clear()
        for handle in handles:
            handle.stop()
        await self.queue.stop(graceful=True, timeout=timeout)

    async def process_job(self, job: Job) -> Dict[str, Any]:
        """Handle one request job; the return value is stored as the job output."""
        try:
            request = AgentJobRequest.model_validate(job.data)
        except ValidationError as exc:
            logger.error("Malformed request job %s on %s: %s", job.id, job.name, exc)
            response = await self._reject_invalid(job, exc)
            return {"type": response.type, "correlationId": response.correlation_id}
        response = await self.handle_request(request)
        return {"type": response.type, "correlationId": response.correlation_id}

    async def _reject_invalid(self, job: Job, exc: ValidationError) -> AgentJobError:
        """Reply ``invalid_request`` when the raw payload still names a usable destination.

        Without one, the validation error propagates and the job fails.
        """
        data = job.data if isinstance(job.data, dict) else {}
        reply_to = data.get("replyTo")
        correlation_id = data.get("correlationId")
        if not (isinstance(reply_to, str) and reply_to.strip()):
            raise exc
        if not (isinstance(correlation_id, str) and correlation_id.strip()):
            raise exc
        try:
            channel = self.channels.resolve(reply_to)
        except ChannelResolutionError:
            raise exc from None
        try:
            origin = RequestOrigin.model_validate(data.get("origin"))
        except ValidationError:
            origin = RequestOrigin(platform="unknown")
        response = AgentJobError(
            correlation_id=correlation_id,
            origin=origin,
            error=f"Invalid request: {str(exc).splitlines()[0]}",
            code="invalid_request",
        )
        await self._deliver(channel, correlation_id, reply_to, response)
        return response

    async def handle_request(self, request: AgentJobRequest) -> AgentJobResponse:
        started = time.monotonic()
        with start_span(
            _TRACER,
            "dispatcher.process",
            attributes={
                "aq.agent": request.agent_name,
                "aq.correlation_id": request.correlation_id,
                "aq.reply_to": request.reply_to,
            },
        ) as span:
            logger.info(
                "Processing request correlation_id=%s agent=%s",
                request.correlation_id,
                request.agent_name,
            )
            try:
                channel = self.channels.resolve(request.reply_to)
            except ChannelResolutionError as exc:
                mark_span_error(span, exc)
                logger.error(
                    "Failed to resolve reply channel correlation_id=%s reply_to=%s: %s",
                    request.correlation_id,
                    request.reply_to,
                    exc,
                )
                raise

            spec = self.settings.agent(request.agent_name)
            if spec is None:
                logger.error(
                    "Agent not configured correlation_id=%s agent=%s",
                    request.correlation_id,
                    request.agent_name,
                )
                response: AgentJobResponse = _error_response(
                    request,
                    f"Agent '{request.agent_name}' not configured",
                    code="agent_not_configured",
                    started=started,
                )
            else:
                response = await self._execute(spec, request, channel, started)

            span.set_attribute("aq.response.type", response.type)
            await self._deliver(channel, request.correlation_id, request.reply_to, response)
            return response

    async def _execute(
        self,
        spec: AgentSpec,
        request: AgentJobRequest,
        channel: ReplyChannel,
        started: float,
    ) -> AgentJobResponse:
        abort_signal = AbortSignal()
        handler = self.coordinator.create_approval_handler(spec, request, channel)
        can_use_tool: Optional[ToolPermissionCallback] = None
        if handler is not None:

            async def gated(tool_name: str, tool_input: Any) -> ToolDecision:
                if abort_signal.aborted:
                    return ToolDecision.deny(abort_signal.reason)
                decision = await handler(tool_name, tool_input)
                if decision.behavior == "abort":
                    # The engine only understands allow/deny; the run is stopped after this call.
                    abort_signal.abort(decision.message or "Execution aborted")
                    return ToolDecision.deny(decision.message or "Execution aborted")
                return decision

            can_use_tool = gated

        options = build_engine_options(spec, request, can_use_tool)
        try:
            result = await run_agent(self.engine, request.prompt, options, abort_signal)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Request failed correlation_id=%s agent=%s: %s",
                request.correlation_id,
                request.agent_name,
                exc,
                exc_info=not isinstance(exc, AgentQueueError),
            )
            session_id = None
            if isinstance(exc, AgentQueueError) and isinstance(exc.detail, dict):
                session_id = exc.detail.get("session_id")
            code = exc.code if isinstance(exc, AgentQueueError) else "execution_error"
            return _error_response(
                request,
                str(exc) or type(exc).__name__,
                code=code,
                started=started,
                session_id=session_id,
            )

        logger.info(
            "Request completed correlation_id=%s agent=%s session_id=%s",
            request.correlation_id,
            request.agent_name,
            result.session_id,
        )
        return AgentJobResult(
            correlation_id=request.correlation_id,
            session_id=result.session_id,
            origin=request.origin,
            duration_ms=_elapsed_ms(started),
            output=result.output,
            structured_output=result.structured_output,
        )

    async def _deliver(
        self,
        channel: ReplyChannel,
        correlation_id: str,
        reply_to: str,
        response: AgentJobResponse,
    ) -> None:
        try:
            await channel.send(response)
        except Exception as exc:
            logger.error(
                "Failed to deliver %s reply correlation_id=%s to %s: %s",
                response.type,
                correlation_id,
                channel.target,
                exc,
            )
            if isinstance(exc, DeliveryError):
                raise
            raise DeliveryError(str(exc), detail={"reply_to": reply_to}) from exc


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _error_response(
    request: AgentJobRequest,
    message: str,
    *,
    code: Optional[str],
    started: float,
    session_id: Optional[str] = None,
) -> AgentJobError:
    return AgentJobError(
        correlation_id=request.correlation_id,
        session_id=session_id,
        origin=request.origin,
        duration_ms=_elapsed_ms(started),
        error=message,
        code=code,
    )
