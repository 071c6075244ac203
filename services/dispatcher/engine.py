"""Contract between the dispatcher and the agent execution engine.

An engine turns ``(prompt, EngineOptions)`` into an async stream of events. Two
event kinds matter here: ``SessionStarted`` and the terminal ``EngineResult``;
anything else is progress and is skipped. Engines backed by an SDK that emits
plain dicts (``{"type": "system", "subtype": "init", ...}`` /
``{"type": "result", ...}``) are accepted too.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from dataclasses import dataclass, field, fields
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, Protocol, runtime_checkable

from core.app_config import AgentSpec
from core.errors import ConfigurationError, ExecutionAbortedError, ExecutionError
from core.messages import AgentJobRequest

from .approval import ToolDecision

logger = logging.getLogger("AgentDispatcher")

ToolPermissionCallback = Callable[[str, Any], Awaitable[ToolDecision]]


@dataclass(frozen=True)
class EngineOptions:
    agent: Dict[str, Any] = field(default_factory=dict)
    resume: Optional[str] = None
    fork_session: bool = False
    can_use_tool: Optional[ToolPermissionCallback] = None


@dataclass(frozen=True)
class SessionStarted:
    session_id: str


@dataclass(frozen=True)
class EngineResult:
    is_error: bool = False
    result: Optional[str] = None
    structured_output: Any = None
    session_id: Optional[str] = None
    error: Optional[str] = None
    total_cost_usd: Optional[float] = None
    num_turns: Optional[int] = None
    usage: Optional[Dict[str, Any]] = None


@runtime_checkable
class AgentEngine(Protocol):
    def stream(self, prompt: str, options: EngineOptions) -> AsyncIterator[Any]: ...


@dataclass(frozen=True)
class AgentRunResult:
    output: Optional[str]
    structured_output: Any
    session_id: Optional[str]
    cost_usd: Optional[float] = None
    turns: Optional[int] = None
    usage: Optional[Dict[str, Any]] = None


class AbortSignal:
    """Set by the tool callback when an approver (or a timeout policy) aborts the run."""

    def __init__(self) -> None:
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self.reason is not None

    def abort(self, reason: str) -> None:
        if self.reason is None:
            self.reason = reason


_RESULT_FIELDS = {f.name for f in fields(EngineResult)}


def coerce_event(event: Any) -> Any:
    if isinstance(event, (SessionStarted, EngineResult)):
        return event
    if isinstance(event, Mapping):
        kind = event.get("type")
        if kind == "system" and event.get("subtype") == "init" and event.get("session_id"):
            return SessionStarted(session_id=str(event["session_id"]))
        if kind == "result":
            return EngineResult(**{k: v for k, v in event.items() if k in _RESULT_FIELDS})
    return None


def build_engine_options(
    spec: AgentSpec,
    request: AgentJobRequest,
    can_use_tool: Optional[ToolPermissionCallback] = None,
) -> EngineOptions:
    resume = request.session_id or None
    return EngineOptions(
        agent=spec.engine_options(),
        resume=resume,
        fork_session=bool(resume and request.fork_session),
        can_use_tool=can_use_tool,
    )


async def run_agent(
    engine: AgentEngine,
    prompt: str,
    options: EngineOptions,
    abort_signal: Optional[AbortSignal] = None,
) -> AgentRunResult:
    session_id: Optional[str] = None
    final: Optional[EngineResult] = None
    stream = engine.stream(prompt, options)
    try:
        async for raw in stream:
            event = coerce_event(raw)
            if isinstance(event, SessionStarted) and session_id is None:
                session_id = event.session_id
            elif isinstance(event, EngineResult):
                final = event
                session_id = session_id or event.session_id
            if abort_signal is not None and abort_signal.aborted:
                raise ExecutionAbortedError(
                    abort_signal.reason or "Execution aborted",
                    detail={"session_id": session_id},
                )
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    if abort_signal is not None and abort_signal.aborted:
        raise ExecutionAbortedError(abort_signal.reason or "Execution aborted", detail={"session_id": session_id})
    if final is None:
        raise ExecutionError("Agent execution ended without a result", detail={"session_id": session_id})
    if final.is_error:
        message = final.error or final.result or "Agent execution failed"
        raise ExecutionError(message, detail={"session_id": session_id})
    return AgentRunResult(
        output=final.result,
        structured_output=final.structured_output,
        session_id=session_id,
        cost_usd=final.total_cost_usd,
        turns=final.num_turns,
        usage=final.usage,
    )


def load_engine(path: str) -> AgentEngine:
    """Import ``package.module:attribute``; a class or zero-arg factory is called once."""
    module_name, sep, attr = str(path or "").partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"dispatcher.engine must look like 'module:attribute', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import engine module {module_name!r}: {exc}") from exc
    target: Any = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ConfigurationError(f"Engine {path!r} not found") from exc
    if inspect.isclass(target) or (callable(target) and not isinstance(target, AgentEngine)):
        target = target()
    if not isinstance(target, AgentEngine):
        raise ConfigurationError(f"Engine {path!r} does not provide stream(prompt, options)")
    logger.info("Loaded agent engine %s", path)
    return target
