from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Set

from core.messages import AgentJobRequest, ApprovalDecision
from core.queue_names import agent_dead_letter_queue, agent_queue_names, agent_request_queue
from core.utils import utc_now_iso
from infra.job_queue import JobQueue

logger = logging.getLogger("AgentQueueClient")


class AgentQueueClient:
    """Producer side: enqueue agent requests and answer approval requests."""

    def __init__(self, queue: JobQueue, *, dead_letter: bool = True):
        self.queue = queue
        self.dead_letter = dead_letter
        self._ready: Set[str] = set()

    async def enqueue(self, request: AgentJobRequest | Mapping[str, Any]) -> str:
        if not isinstance(request, AgentJobRequest):
            request = AgentJobRequest.model_validate(dict(request))
        if request.created_at is None:
            request = request.model_copy(update={"created_at": utc_now_iso()})
        queue_name = agent_request_queue(request.agent_name)
        if queue_name not in self._ready:
            dead_letter = agent_dead_letter_queue(request.agent_name) if self.dead_letter else None
            await self.queue.create_queue(queue_name, dead_letter=dead_letter)
            self._ready.add(queue_name)
        job_id = await self.queue.send(queue_name, request.to_wire(), priority=int(request.priority or 0))
        logger.info(
            "Enqueued request correlation_id=%s agent=%s job_id=%s",
            request.correlation_id,
            request.agent_name,
            job_id,
        )
        return job_id

    async def submit_approval(
        self,
        queue_name: str,
        decision: ApprovalDecision | Mapping[str, Any],
    ) -> str:
        """Answer an ``ApprovalRequest`` by posting to its ``approvalQueueName``."""
        if not isinstance(decision, ApprovalDecision):
            decision = ApprovalDecision.model_validate(dict(decision))
        job_id = await self.queue.send(queue_name, decision.to_wire())
        logger.info("Approval decision submitted to %s: %s", queue_name, decision.decision)
        return job_id

    @staticmethod
    def agent_queue_names(agent_names: Iterable[str]) -> list[str]:
        return agent_queue_names(agent_names)

    async def queue_depths(self, agent_names: Iterable[str]) -> Dict[str, int]:
        depths: Dict[str, int] = {}
        for name in agent_queue_names(agent_names):
            depths[name] = await self.queue.queue_size(name)
        return depths

    async def poll_reply(self, queue_name: str) -> Optional[Dict[str, Any]]:
        """Take one reply from a ``queue://`` destination, completing its job."""
        job = await self.queue.fetch_one(queue_name)
        if job is None:
            return None
        await self.queue.complete(queue_name, job.id)
        return job.data
