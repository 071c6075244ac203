"""Wire messages exchanged through job queues and reply channels.

Field names on the wire are camelCase (``correlationId``, ``replyTo`` ...);
Python code uses the snake_case attribute names. Both spellings are accepted
on input.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from core.utils import utc_now_iso

DecisionKind = Literal["approve", "deny", "abort"]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RequestOrigin(WireModel):
    """Where a request came from. Informational only; copied onto every reply."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)

    platform: str
    user_id: Optional[str] = None
    channel_id: Optional[str] = None
    thread_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class AgentJobRequest(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)

    agent_name: str
    prompt: str
    correlation_id: str
    session_id: Optional[str] = None
    fork_session: bool = False
    origin: RequestOrigin
    reply_to: str
    created_at: Optional[str] = None
    priority: Optional[int] = None

    @field_validator("agent_name", "correlation_id", "reply_to")
    @classmethod
    def _require_non_empty(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("must be a non-empty string")
        return v


class ResponseEnvelope(WireModel):
    correlation_id: str
    session_id: Optional[str] = None
    origin: RequestOrigin
    completed_at: str = Field(default_factory=utc_now_iso)
    duration_ms: int = 0


class AgentJobResult(ResponseEnvelope):
    type: Literal["result"] = "result"
    output: Optional[str] = None
    structured_output: Optional[Any] = None


class AgentJobError(ResponseEnvelope):
    type: Literal["error"] = "error"
    error: str
    code: Optional[str] = None


AgentJobResponse = Annotated[Union[AgentJobResult, AgentJobError], Field(discriminator="type")]


class ToolApprovalInfo(WireModel):
    name: str
    input: Any = None


class ApprovalRequest(WireModel):
    type: Literal["approval_request"] = "approval_request"
    approval_id: str
    correlation_id: str
    origin: RequestOrigin
    tool: ToolApprovalInfo
    expires_at: str
    approval_queue_name: str


class DecidedBy(WireModel):
    user_id: str
    platform: str
    timestamp: str


class ApprovalDecision(WireModel):
    approval_id: str
    decision: DecisionKind
    reason: Optional[str] = None
    updated_input: Optional[Any] = None
    decided_by: Optional[DecidedBy] = None


ReplyMessage = Annotated[
    Union[AgentJobResult, AgentJobError, ApprovalRequest],
    Field(discriminator="type"),
]

_RESPONSE_ADAPTER: TypeAdapter[Any] = TypeAdapter(AgentJobResponse)
_REPLY_ADAPTER: TypeAdapter[Any] = TypeAdapter(ReplyMessage)


def parse_response(data: Dict[str, Any]) -> Union[AgentJobResult, AgentJobError]:
    return _RESPONSE_ADAPTER.validate_python(data)


def parse_reply_message(data: Dict[str, Any]) -> Union[AgentJobResult, AgentJobError, ApprovalRequest]:
    return _REPLY_ADAPTER.validate_python(data)
