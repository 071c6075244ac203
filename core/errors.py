from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from pydantic import ValidationError


@dataclass
class AgentQueueError(Exception):
    """Base application error with a stable error code."""

    message: str
    code: str = "internal_error"
    retryable: bool = False
    detail: Any = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message


class ConfigurationError(AgentQueueError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="configuration_error", detail=detail)


class ChannelResolutionError(AgentQueueError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="channel_unresolved", detail=detail)


class DeliveryError(AgentQueueError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="delivery_failed", retryable=True, detail=detail)


class ExecutionError(AgentQueueError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="execution_error", detail=detail)


class ExecutionAbortedError(AgentQueueError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="execution_aborted", detail=detail)


class ApprovalTimeoutError(AgentQueueError):
    def __init__(self, message: str = "Approval timeout", *, detail: Any = None):
        super().__init__(message=message, code="approval_timeout", detail=detail)


class QueueError(AgentQueueError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="queue_error", retryable=True, detail=detail)


def normalize_error(exc: BaseException, *, source: str = "unknown") -> Dict[str, Any]:
    """Shape an exception into the ``output`` stored on a failed job.

    Malformed request payloads are reported as ``invalid_request`` so a
    dead-lettered job shows why it never reached an agent.
    """
    if isinstance(exc, AgentQueueError):
        payload: Dict[str, Any] = {"code": exc.code, "message": exc.message, "source": source}
        if exc.detail is not None:
            payload["detail"] = exc.detail
        payload["retryable"] = exc.retryable
        return payload
    if isinstance(exc, ValidationError):
        return {
            "code": "invalid_request",
            "message": str(exc).splitlines()[0],
            "source": source,
            "detail": [".".join(str(p) for p in err["loc"]) for err in exc.errors()],
        }
    return {"code": "internal_error", "message": str(exc) or type(exc).__name__, "source": source}
