from __future__ import annotations

import pytest

from core.app_config import AgentSpec
from core.errors import ConfigurationError, ExecutionAbortedError, ExecutionError
from core.messages import AgentJobRequest, RequestOrigin
from services.dispatcher.engine import (
    AbortSignal,
    EngineOptions,
    EngineResult,
    SessionStarted,
    build_engine_options,
    coerce_event,
    load_engine,
    run_agent,
)
from tests._fakes import SessionEngine


def _request(**overrides) -> AgentJobRequest:
    data = {
        "agent_name": "echo-agent",
        "prompt": "hi",
        "correlation_id": "c1",
        "origin": RequestOrigin(platform="cli"),
        "reply_to": "test://out",
    }
    data.update(overrides)
    return AgentJobRequest(**data)


class _ListEngine:
    def __init__(self, events):
        self.events = events
        self.closed = False

    async def stream(self, prompt, options):
        try:
            for event in self.events:
                yield event
        finally:
            self.closed = True


def test_build_engine_options_only_forks_when_resuming() -> None:
    spec = AgentSpec.model_validate({"model": "small", "hitl": {"requireApproval": ["Bash"]}})

    options = build_engine_options(spec, _request(fork_session=True))
    assert options.agent == {"model": "small"}
    assert options.resume is None
    assert options.fork_session is False

    options = build_engine_options(spec, _request(session_id="s1", fork_session=True))
    assert options.resume == "s1"
    assert options.fork_session is True


def test_coerce_event_understands_sdk_dicts() -> None:
    assert coerce_event({"type": "system", "subtype": "init", "session_id": "s1"}) == SessionStarted("s1")
    result = coerce_event({"type": "result", "result": "ok", "session_id": "s1", "duration_api_ms": 3})
    assert result == EngineResult(result="ok", session_id="s1")
    assert coerce_event({"type": "assistant"}) is None


@pytest.mark.asyncio
async def test_run_agent_returns_final_result_and_first_session_id() -> None:
    engine = _ListEngine(
        [
            SessionStarted("s1"),
            {"type": "assistant", "text": "..."},
            EngineResult(result="done", structured_output={"k": 1}, session_id="s2", num_turns=2),
        ]
    )

    result = await run_agent(engine, "hi", EngineOptions())

    assert result.output == "done"
    assert result.structured_output == {"k": 1}
    assert result.session_id == "s1"
    assert result.turns == 2
    assert engine.closed


@pytest.mark.asyncio
async def test_run_agent_error_result_keeps_session_id() -> None:
    engine = _ListEngine([SessionStarted("s1"), EngineResult(is_error=True, error="rate limited")])

    with pytest.raises(ExecutionError, match="rate limited") as exc_info:
        await run_agent(engine, "hi", EngineOptions())

    assert exc_info.value.detail == {"session_id": "s1"}


@pytest.mark.asyncio
async def test_run_agent_without_result_fails() -> None:
    with pytest.raises(ExecutionError, match="ended without a result"):
        await run_agent(_ListEngine([SessionStarted("s1")]), "hi", EngineOptions())


@pytest.mark.asyncio
async def test_run_agent_stops_when_aborted() -> None:
    signal = AbortSignal()

    class _AbortingEngine(_ListEngine):
        async def stream(self, prompt, options):
            try:
                yield SessionStarted("s1")
                signal.abort("Execution aborted by approver")
                yield {"type": "tool_result"}
                yield EngineResult(result="should not be used")
            finally:
                self.closed = True

    engine = _AbortingEngine([])
    with pytest.raises(ExecutionAbortedError, match="Execution aborted by approver") as exc_info:
        await run_agent(engine, "hi", EngineOptions(), signal)

    assert exc_info.value.detail == {"session_id": "s1"}
    assert engine.closed


@pytest.mark.asyncio
async def test_session_engine_resumes_and_forks() -> None:
    engine = SessionEngine()

    first = await run_agent(engine, "one", EngineOptions())
    second = await run_agent(engine, "two", EngineOptions(resume=first.session_id))
    forked = await run_agent(engine, "three", EngineOptions(resume=first.session_id, fork_session=True))

    assert second.session_id == first.session_id
    assert second.output == "2:two"
    assert forked.session_id != first.session_id
    assert forked.output == "3:three"
    assert engine.sessions[first.session_id] == ["one", "two"]


def test_load_engine_instantiates_classes() -> None:
    engine = load_engine("tests._fakes:SessionEngine")
    assert isinstance(engine, SessionEngine)


@pytest.mark.parametrize(
    "path",
    ["no-colon", "tests._fakes:Missing", "not_a_real_module_xyz:Engine", "core.utils:REPO_ROOT"],
)
def test_load_engine_rejects_bad_paths(path: str) -> None:
    with pytest.raises(ConfigurationError):
        load_engine(path)
