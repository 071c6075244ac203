from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict

import pytest

from core.app_config import AgentSpec, HITLDefaults
from core.messages import AgentJobRequest, RequestOrigin
from infra.job_queue import JobQueue
from services.dispatcher.approval import ApprovalCoordinator
from tests._fakes import InMemoryJobStore, RecordingChannelFactory

_FAST_POLL = {"poll_initial_seconds": 0.005, "poll_max_seconds": 0.01, "poll_multiplier": 1.5}


def _setup(**defaults: Any):
    store = InMemoryJobStore()
    queue = JobQueue(store)
    coordinator = ApprovalCoordinator(queue, HITLDefaults(**{**_FAST_POLL, **defaults}))
    channels = RecordingChannelFactory()
    return store, queue, coordinator, channels


def _request() -> AgentJobRequest:
    return AgentJobRequest(
        agent_name="deploy-bot",
        prompt="deploy",
        correlation_id="corr-1",
        origin=RequestOrigin(platform="slack", user_id="U1"),
        reply_to="test://approver",
    )


async def _answer(
    queue: JobQueue,
    channels: RecordingChannelFactory,
    decide: Callable[[Dict[str, Any]], Dict[str, Any]],
) -> Dict[str, Any]:
    async with asyncio.timeout(2):
        while not channels.messages("approval_request"):
            await asyncio.sleep(0.005)
    request = channels.messages("approval_request")[0]
    await queue.send(request["approvalQueueName"], decide(request))
    return request


def test_no_policy_means_no_handler() -> None:
    _, _, coordinator, channels = _setup()

    handler = coordinator.create_approval_handler(AgentSpec(), _request(), channels.create("test://approver"))

    assert handler is None


def test_policy_values_take_precedence_over_defaults() -> None:
    _, _, coordinator, _ = _setup(approval_timeout_ms=1000, on_timeout="deny")
    spec = AgentSpec.model_validate({"hitl": {"requireApproval": ["Bash"], "approvalTimeoutMs": 50, "onTimeout": "abort"}})

    assert coordinator.resolve_timeout_ms(spec) == 50
    assert coordinator.resolve_on_timeout(spec) == "abort"
    assert coordinator.resolve_timeout_ms(AgentSpec.model_validate({"hitl": {}})) == 1000
    assert coordinator.resolve_on_timeout(AgentSpec.model_validate({"hitl": {}})) == "deny"


@pytest.mark.asyncio
async def test_auto_approve_wins_and_unlisted_tools_are_allowed() -> None:
    _, _, coordinator, channels = _setup()
    spec = AgentSpec.model_validate({"hitl": {"requireApproval": ["*"], "autoApprove": ["Read", "mcp__docs__*"]}})
    handler = coordinator.create_approval_handler(spec, _request(), channels.create("test://approver"))

    read = await handler("read", {"path": "a"})
    docs = await handler("mcp__docs__search", {"q": "x"})

    assert read.behavior == "allow" and read.updated_input == {"path": "a"}
    assert docs.behavior == "allow"
    assert channels.sent == []

    narrow = AgentSpec.model_validate({"hitl": {"requireApproval": ["Bash"]}})
    handler = coordinator.create_approval_handler(narrow, _request(), channels.create("test://approver"))
    assert (await handler("Write", {})).behavior == "allow"
    assert channels.sent == []


@pytest.mark.asyncio
async def test_approve_with_updated_input() -> None:
    store, queue, coordinator, channels = _setup()
    spec = AgentSpec.model_validate({"hitl": {"requireApproval": ["Bash"]}})
    handler = coordinator.create_approval_handler(spec, _request(), channels.create("test://approver"))

    answer = asyncio.create_task(
        _answer(
            queue,
            channels,
            lambda req: {"approvalId": req["approvalId"], "decision": "approve", "updatedInput": {"command": "ls -la"}},
        )
    )
    decision = await handler("Bash", {"command": "rm -rf /"})
    request = await answer

    assert decision.behavior == "allow"
    assert decision.updated_input == {"command": "ls -la"}
    assert request["correlationId"] == "corr-1"
    assert request["tool"] == {"name": "Bash", "input": {"command": "rm -rf /"}}
    assert request["origin"] == {"platform": "slack", "userId": "U1"}
    assert request["approvalQueueName"].startswith("claude.approvals.corr-1.")
    assert request["approvalQueueName"] in store.deleted_queues


@pytest.mark.asyncio
async def test_approve_without_updated_input_keeps_original() -> None:
    _, queue, coordinator, channels = _setup()
    spec = AgentSpec.model_validate({"hitl": {"requireApproval": ["Bash"]}})
    handler = coordinator.create_approval_handler(spec, _request(), channels.create("test://approver"))

    answer = asyncio.create_task(
        _answer(queue, channels, lambda req: {"approvalId": req["approvalId"], "decision": "approve"})
    )
    decision = await handler("Bash", {"command": "ls"})
    await answer

    assert decision.updated_input == {"command": "ls"}


@pytest.mark.asyncio
async def test_deny_and_abort_use_default_messages() -> None:
    _, queue, coordinator, channels = _setup()
    spec = AgentSpec.model_validate({"hitl": {"requireApproval": ["Bash"]}})
    handler = coordinator.create_approval_handler(spec, _request(), channels.create("test://approver"))

    answer = asyncio.create_task(
        _answer(queue, channels, lambda req: {"approvalId": req["approvalId"], "decision": "deny"})
    )
    denied = await handler("Bash", {})
    await answer
    assert denied.behavior == "deny"
    assert denied.message == "Tool use denied by approver"

    channels.sent.clear()
    answer = asyncio.create_task(
        _answer(queue, channels, lambda req: {"approvalId": req["approvalId"], "decision": "abort"})
    )
    aborted = await handler("Bash", {})
    await answer
    assert aborted.behavior == "abort"
    assert aborted.message == "Execution aborted by approver"


@pytest.mark.asyncio
async def test_deny_reason_is_passed_through() -> None:
    _, queue, coordinator, channels = _setup()
    spec = AgentSpec.model_validate({"hitl": {"requireApproval": ["Bash"]}})
    handler = coordinator.create_approval_handler(spec, _request(), channels.create("test://approver"))

    answer = asyncio.create_task(
        _answer(
            queue,
            channels,
            lambda req: {
                "approvalId": req["approvalId"],
                "decision": "deny",
                "reason": "not on a Friday",
                "decidedBy": {"userId": "U2", "platform": "slack", "timestamp": "2026-01-01T00:00:00Z"},
            },
        )
    )
    decision = await handler("Bash", {})
    await answer

    assert decision.message == "not on a Friday"


@pytest.mark.asyncio
async def test_timeout_denies_by_default() -> None:
    store, _, coordinator, channels = _setup()
    spec = AgentSpec.model_validate({"hitl": {"requireApproval": ["Bash"], "approvalTimeoutMs": 50}})
    handler = coordinator.create_approval_handler(spec, _request(), channels.create("test://approver"))

    decision = await handler("Bash", {"command": "deploy"})

    assert decision.behavior == "deny"
    assert decision.message == "Approval timed out after 0.05 seconds"
    request = channels.messages("approval_request")[0]
    assert request["approvalQueueName"] in store.deleted_queues


@pytest.mark.asyncio
async def test_timeout_can_abort() -> None:
    _, _, coordinator, channels = _setup()
    spec = AgentSpec.model_validate(
        {"hitl": {"requireApproval": ["Bash"], "approvalTimeoutMs": 20, "onTimeout": "abort"}}
    )
    handler = coordinator.create_approval_handler(spec, _request(), channels.create("test://approver"))

    decision = await handler("Bash", {})

    assert decision.behavior == "abort"
    assert decision.message == "Execution aborted: approval timed out after 0.02 seconds"


@pytest.mark.asyncio
async def test_decision_for_another_approval_is_ignored() -> None:
    _, queue, coordinator, channels = _setup()
    spec = AgentSpec.model_validate({"hitl": {"requireApproval": ["Bash"], "approvalTimeoutMs": 2000}})
    handler = coordinator.create_approval_handler(spec, _request(), channels.create("test://approver"))

    async def answer_twice() -> None:
        request = await _answer(queue, channels, lambda req: {"approvalId": "someone-else", "decision": "approve"})
        await asyncio.sleep(0.02)
        await queue.send(request["approvalQueueName"], {"approvalId": request["approvalId"], "decision": "deny"})

    answer = asyncio.create_task(answer_twice())
    decision = await handler("Bash", {})
    await answer

    assert decision.behavior == "deny"


@pytest.mark.asyncio
async def test_each_invocation_gets_its_own_queue() -> None:
    _, _, coordinator, channels = _setup()
    spec = AgentSpec.model_validate({"hitl": {"requireApproval": ["Bash"], "approvalTimeoutMs": 10}})
    handler = coordinator.create_approval_handler(spec, _request(), channels.create("test://approver"))

    await handler("Bash", {})
    await handler("Bash", {})

    names = [m["approvalQueueName"] for m in channels.messages("approval_request")]
    assert len(set(names)) == 2


class _SlowFetchStore(InMemoryJobStore):
    """Holds on to a fetched job long enough for a short deadline to pass."""

    async def fetch(self, name: str, *, batch_size: int = 1):
        jobs = await super().fetch(name, batch_size=batch_size)
        if jobs:
            await asyncio.sleep(0.05)
        return jobs


@pytest.mark.asyncio
async def test_decision_fetched_at_the_deadline_is_not_lost() -> None:
    store = _SlowFetchStore()
    queue = JobQueue(store)
    coordinator = ApprovalCoordinator(queue, HITLDefaults(**_FAST_POLL))
    await queue.create_queue("claude.approvals.corr-1.a1")
    await queue.send("claude.approvals.corr-1.a1", {"approvalId": "a1", "decision": "approve"})

    decision = await coordinator.wait_for_decision("claude.approvals.corr-1.a1", 0.01, approval_id="a1")

    assert decision.decision == "approve"
    assert [row.state for row in store.jobs("claude.approvals.corr-1.a1")] == ["completed"]
