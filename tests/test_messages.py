import pytest
from pydantic import ValidationError

from core.errors import DeliveryError, ExecutionAbortedError, normalize_error
from core.messages import (
    AgentJobError,
    AgentJobRequest,
    AgentJobResult,
    ApprovalDecision,
    ApprovalRequest,
    RequestOrigin,
    ToolApprovalInfo,
    parse_reply_message,
    parse_response,
)


def _request_payload(**overrides):
    payload = {
        "agentName": "echo-agent",
        "prompt": "Say hi",
        "correlationId": "c1",
        "origin": {"platform": "slack", "userId": "U1", "channelId": "C1"},
        "replyTo": "queue://replies",
    }
    payload.update(overrides)
    return payload


def test_request_accepts_camel_case_wire_fields() -> None:
    request = AgentJobRequest.model_validate(_request_payload(sessionId="s1", forkSession=True))

    assert request.agent_name == "echo-agent"
    assert request.session_id == "s1"
    assert request.fork_session is True
    assert request.origin.user_id == "U1"
    assert request.to_wire()["replyTo"] == "queue://replies"


def test_request_requires_reply_to() -> None:
    with pytest.raises(ValidationError):
        AgentJobRequest.model_validate(_request_payload(replyTo="  "))


def test_result_wire_shape_keeps_origin_and_drops_nulls() -> None:
    origin = RequestOrigin(platform="slack", user_id="U1", metadata={"team": "T1"})
    result = AgentJobResult(correlation_id="c1", session_id="s1", origin=origin, duration_ms=12, output="hi")

    wire = result.to_wire()

    assert wire["type"] == "result"
    assert wire["correlationId"] == "c1"
    assert wire["sessionId"] == "s1"
    assert wire["durationMs"] == 12
    assert wire["origin"] == {"platform": "slack", "userId": "U1", "metadata": {"team": "T1"}}
    assert "structuredOutput" not in wire
    assert wire["completedAt"].endswith("Z")


def test_parse_response_discriminates_on_type() -> None:
    origin = {"platform": "cli"}
    parsed = parse_response({"type": "error", "correlationId": "c1", "origin": origin, "error": "boom"})
    assert isinstance(parsed, AgentJobError)
    assert parsed.error == "boom"

    parsed = parse_response({"type": "result", "correlationId": "c1", "origin": origin, "output": "ok"})
    assert isinstance(parsed, AgentJobResult)


def test_approval_request_round_trips_through_reply_parser() -> None:
    request = ApprovalRequest(
        approval_id="a1",
        correlation_id="c1",
        origin=RequestOrigin(platform="slack"),
        tool=ToolApprovalInfo(name="Bash", input={"command": "ls"}),
        expires_at="2026-01-01T00:00:00Z",
        approval_queue_name="claude.approvals.c1.a1",
    )
    parsed = parse_reply_message(request.to_wire())

    assert isinstance(parsed, ApprovalRequest)
    assert parsed.tool.input == {"command": "ls"}
    assert request.to_wire()["approvalQueueName"] == "claude.approvals.c1.a1"


def test_approval_decision_rejects_unknown_decision() -> None:
    decision = ApprovalDecision.model_validate(
        {"approvalId": "a1", "decision": "approve", "updatedInput": {"command": "ls -la"}}
    )
    assert decision.updated_input == {"command": "ls -la"}

    with pytest.raises(ValidationError):
        ApprovalDecision.model_validate({"approvalId": "a1", "decision": "maybe"})


def test_normalize_error_uses_error_codes() -> None:
    payload = normalize_error(DeliveryError("down", detail={"url": "http://x"}), source="worker")
    assert payload == {
        "code": "delivery_failed",
        "message": "down",
        "source": "worker",
        "detail": {"url": "http://x"},
        "retryable": True,
    }

    payload = normalize_error(RuntimeError("boom"), source="worker")
    assert payload == {"code": "internal_error", "message": "boom", "source": "worker"}

    assert ExecutionAbortedError("stop").code == "execution_aborted"


def test_normalize_error_reports_invalid_requests() -> None:
    with pytest.raises(ValidationError) as exc_info:
        AgentJobRequest.model_validate({"prompt": "no agent"})

    payload = normalize_error(exc_info.value, source="worker")

    assert payload["code"] == "invalid_request"
    assert payload["source"] == "worker"
    assert "agentName" in payload["detail"]
