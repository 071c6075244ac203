from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict

import pytest

from infra.observability import otel


class _DummySpan:
    def __init__(self) -> None:
        self.attrs: Dict[str, Any] = {}
        self.recorded_exceptions: list[BaseException] = []
        self.status: Any = None

    def set_attribute(self, key: str, value: Any) -> None:
        self.attrs[str(key)] = value

    def record_exception(self, exc: BaseException) -> None:
        self.recorded_exceptions.append(exc)

    def set_status(self, status: Any) -> None:
        self.status = status


@pytest.mark.asyncio
async def test_traced_passes_attributes_and_injects_span(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: Dict[str, Any] = {}
    dummy_span = _DummySpan()

    @contextmanager
    def _fake_start_span(tracer: Any, name: str, **kwargs: Any):
        captured["tracer"] = tracer
        captured["name"] = name
        captured.update(kwargs)
        yield dummy_span

    monkeypatch.setattr(otel, "start_span", _fake_start_span)

    @otel.traced(
        "t_async",
        "queue.send",
        span_arg="_span",
        attributes_getter=lambda args: {"messaging.destination": str(args.get("name"))},
        mark_error_on_exception=True,
    )
    async def _handler(name: str, data: Any, _span: Any = None) -> Any:
        _span.set_attribute("aq.handler", "ok")
        return _span

    result = await _handler("claude.agents.a.requests", {"x": 1})
    assert result is dummy_span
    assert captured["tracer"] == "t_async"
    assert captured["name"] == "queue.send"
    assert captured["attributes"] == {"messaging.destination": "claude.agents.a.requests"}
    assert captured["mark_error_on_exception"] is True
    assert dummy_span.attrs["aq.handler"] == "ok"


def test_traced_rejects_sync_functions() -> None:
    with pytest.raises(TypeError):

        @otel.traced("t", "demo.sync")
        def _handler() -> None:
            return None


def test_start_span_marks_errors_when_asked(monkeypatch: pytest.MonkeyPatch) -> None:
    span = _DummySpan()

    class _Tracer:
        @contextmanager
        def start_as_current_span(self, name: str, **kwargs: Any):
            span.set_attribute("name", name)
            yield span

    with pytest.raises(RuntimeError):
        with otel.start_span(_Tracer(), "demo", attributes={"a": 1, "b": None}, mark_error_on_exception=True):
            raise RuntimeError("boom")

    assert span.attrs["name"] == "demo"
    assert span.attrs["aq.error.type"] == "RuntimeError"
    assert span.recorded_exceptions and str(span.recorded_exceptions[0]) == "boom"


def test_mark_span_error_uses_first_line_of_message() -> None:
    span = _DummySpan()
    exc = ValueError("1 validation error for AgentJobRequest\nreplyTo\n  field required")

    otel.mark_span_error(span, exc)

    assert len(span.recorded_exceptions) == 1
    assert span.attrs["aq.error.type"] == "ValueError"
    assert span.attrs["aq.error.message"] == "1 validation error for AgentJobRequest"


def test_inject_context_keeps_explicit_traceparent() -> None:
    headers = {"traceparent": "00-abc-def-01"}

    otel.inject_context_to_headers(headers)

    assert headers["traceparent"] == "00-abc-def-01"


def test_init_otel_disabled_is_sticky_and_shutdown_is_safe(monkeypatch: pytest.MonkeyPatch) -> None:
    from core.app_config import ObservabilityOTelConfig

    monkeypatch.setattr(otel, "_enabled", None)
    monkeypatch.setattr(otel, "_provider", None)
    monkeypatch.setattr(otel, "_users", 0)

    assert otel.init_otel(ObservabilityOTelConfig(enabled=False)) is False
    # The first decision holds for the rest of the process.
    assert otel.init_otel(ObservabilityOTelConfig(enabled=True)) is False
    otel.shutdown_otel()
    assert otel._users == 0
