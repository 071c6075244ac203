"""Human-in-the-loop gate for agent tool calls.

For every tool call of an agent with a ``hitl`` policy the handler decides:

1. tool matches ``auto_approve`` -> allow (wins over ``require_approval``)
2. tool does not match ``require_approval`` -> allow
3. otherwise publish an ``ApprovalRequest`` through the job's reply channel and
   wait on a per-invocation queue for the ``ApprovalDecision``.

Decisions are polled from the queue with a backoff (1s, x1.5, capped at 5s)
under a single deadline; when the deadline passes the agent's ``on_timeout``
policy turns the wait into a deny or an abort.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import ValidationError

from core.app_config import AgentSpec, HITLDefaults, TimeoutBehavior
from core.errors import ApprovalTimeoutError
from core.messages import AgentJobRequest, ApprovalDecision, ApprovalRequest, ToolApprovalInfo
from core.queue_names import approval_queue
from core.tool_patterns import matches
from core.utils import new_id, to_iso, utc_now
from infra.job_queue import JobQueue
from infra.observability.otel import get_tracer, start_span
from infra.reply_channels.base import ReplyChannel

logger = logging.getLogger("ApprovalCoordinator")
_TRACER = get_tracer("services.dispatcher.approval")

DENIED_BY_APPROVER = "Tool use denied by approver"
ABORTED_BY_APPROVER = "Execution aborted by approver"


@dataclass(frozen=True)
class ToolDecision:
    behavior: Literal["allow", "deny", "abort"]
    message: Optional[str] = None
    updated_input: Any = None

    @classmethod
    def allow(cls, updated_input: Any) -> "ToolDecision":
        return cls(behavior="allow", updated_input=updated_input)

    @classmethod
    def deny(cls, message: str) -> "ToolDecision":
        return cls(behavior="deny", message=message)

    @classmethod
    def abort(cls, message: str) -> "ToolDecision":
        return cls(behavior="abort", message=message)


ApprovalHandler = Callable[[str, Any], Awaitable[ToolDecision]]


def _format_seconds(timeout_ms: int) -> str:
    return f"{timeout_ms / 1000:g}"


class ApprovalCoordinator:
    def __init__(self, queue: JobQueue, defaults: Optional[HITLDefaults] = None):
        self.queue = queue
        self.defaults = defaults or HITLDefaults()

    def resolve_timeout_ms(self, spec: AgentSpec) -> int:
        policy = spec.hitl
        if policy is not None and policy.approval_timeout_ms is not None:
            return int(policy.approval_timeout_ms)
        return int(self.defaults.approval_timeout_ms)

    def resolve_on_timeout(self, spec: AgentSpec) -> TimeoutBehavior:
        policy = spec.hitl
        if policy is not None and policy.on_timeout is not None:
            return policy.on_timeout
        return self.defaults.on_timeout

    def create_approval_handler(
        self,
        spec: AgentSpec,
        request: AgentJobRequest,
        channel: ReplyChannel,
    ) -> Optional[ApprovalHandler]:
        """Build the per-job tool callback, or None when the agent has no policy."""
        policy = spec.hitl
        if policy is None:
            return None
        timeout_ms = self.resolve_timeout_ms(spec)
        on_timeout = self.resolve_on_timeout(spec)

        async def handle(tool_name: str, tool_input: Any) -> ToolDecision:
            if matches(tool_name, policy.auto_approve):
                logger.debug("Tool %r auto-approved correlation_id=%s", tool_name, request.correlation_id)
                return ToolDecision.allow(tool_input)
            if not matches(tool_name, policy.require_approval):
                return ToolDecision.allow(tool_input)
            return await self.request_approval(
                request,
                channel,
                tool_name=tool_name,
                tool_input=tool_input,
                timeout_ms=timeout_ms,
                on_timeout=on_timeout,
            )

        return handle

    async def request_approval(
        self,
        request: AgentJobRequest,
        channel: ReplyChannel,
        *,
        tool_name: str,
        tool_input: Any,
        timeout_ms: int,
        on_timeout: TimeoutBehavior,
    ) -> ToolDecision:
        approval_id = new_id()
        queue_name = approval_queue(request.correlation_id, approval_id)
        logger.info(
            "Tool %r requires approval correlation_id=%s approval_id=%s",
            tool_name,
            request.correlation_id,
            approval_id,
        )
        with start_span(
            _TRACER,
            "hitl.approval",
            attributes={
                "aq.correlation_id": request.correlation_id,
                "aq.approval_id": approval_id,
                "aq.tool_name": tool_name,
            },
        ) as span:
            await self.queue.create_queue(queue_name)
            try:
                await channel.send(
                    ApprovalRequest(
                        approval_id=approval_id,
                        correlation_id=request.correlation_id,
                        origin=request.origin,
                        tool=ToolApprovalInfo(name=tool_name, input=tool_input),
                        expires_at=to_iso(utc_now() + timedelta(milliseconds=timeout_ms)) or "",
                        approval_queue_name=queue_name,
                    )
                )
                try:
                    decision = await self.wait_for_decision(
                        queue_name,
                        timeout_ms / 1000,
                        approval_id=approval_id,
                    )
                except ApprovalTimeoutError:
                    logger.warning(
                        "Approval timeout for tool %r correlation_id=%s on_timeout=%s",
                        tool_name,
                        request.correlation_id,
                        on_timeout,
                    )
                    span.set_attribute("aq.approval.outcome", f"timeout_{on_timeout}")
                    seconds = _format_seconds(timeout_ms)
                    if on_timeout == "abort":
                        return ToolDecision.abort(f"Execution aborted: approval timed out after {seconds} seconds")
                    return ToolDecision.deny(f"Approval timed out after {seconds} seconds")
            finally:
                await self._discard_queue(queue_name)

            logger.info(
                "Approval decision for %r: %s correlation_id=%s",
                tool_name,
                decision.decision,
                request.correlation_id,
            )
            span.set_attribute("aq.approval.outcome", decision.decision)
            if decision.decision == "approve":
                updated = decision.updated_input if decision.updated_input is not None else tool_input
                return ToolDecision.allow(updated)
            if decision.decision == "deny":
                return ToolDecision.deny(decision.reason or DENIED_BY_APPROVER)
            return ToolDecision.abort(decision.reason or ABORTED_BY_APPROVER)

    async def wait_for_decision(
        self,
        queue_name: str,
        timeout_seconds: float,
        *,
        approval_id: Optional[str] = None,
    ) -> ApprovalDecision:
        """Poll ``queue_name`` until a decision arrives; raise ``ApprovalTimeoutError`` at the deadline.

        Each fetch runs shielded. A fetch still in flight when the deadline fires
        is awaited, and a decision it returns wins over the timeout.
        """
        interval = float(self.defaults.poll_initial_seconds)
        pending: Optional[asyncio.Task[Optional[ApprovalDecision]]] = None
        try:
            async with asyncio.timeout(max(0.0, float(timeout_seconds))):
                while True:
                    pending = asyncio.ensure_future(self._fetch_decision(queue_name, approval_id))
                    decision = await asyncio.shield(pending)
                    pending = None
                    if decision is not None:
                        return decision
                    await asyncio.sleep(interval)
                    interval = min(interval * self.defaults.poll_multiplier, self.defaults.poll_max_seconds)
        except TimeoutError as exc:
            if pending is not None:
                decision = await pending
                if decision is not None:
                    return decision
            raise ApprovalTimeoutError(detail={"queue": queue_name}) from exc

    async def _fetch_decision(self, queue_name: str, approval_id: Optional[str]) -> Optional[ApprovalDecision]:
        job = await self.queue.fetch_one(queue_name)
        if job is None:
            return None
        await self.queue.complete(queue_name, job.id)
        try:
            decision = ApprovalDecision.model_validate(job.data)
        except ValidationError as exc:
            logger.error("Malformed approval decision on %s: %s", queue_name, exc)
            return None
        if approval_id and decision.approval_id != approval_id:
            logger.warning(
                "Ignoring decision for approval_id=%s on %s (expected %s)",
                decision.approval_id,
                queue_name,
                approval_id,
            )
            return None
        return decision

    async def _discard_queue(self, queue_name: str) -> None:
        try:
            await self.queue.delete_queue(queue_name)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not delete approval queue %s: %s", queue_name, exc)
