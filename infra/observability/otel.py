from __future__ import annotations

from contextlib import contextmanager
from functools import wraps
import inspect
import logging
import os
import threading
from typing import Any, Callable, Dict, Iterator, Mapping, MutableMapping, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import inject as otel_inject
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode

from core.app_config import ObservabilityOTelConfig


logger = logging.getLogger("OTel")

_state_lock = threading.Lock()
_enabled: Optional[bool] = None
_provider: Optional[TracerProvider] = None
_users = 0


def _build_provider(settings: ObservabilityOTelConfig, service_name: Optional[str]) -> TracerProvider:
    resource = Resource.create(
        {
            "service.name": service_name or settings.service_name or os.getenv("OTEL_SERVICE_NAME", ""),
            "service.namespace": settings.service_namespace,
            "service.version": settings.service_version,
        }
    )
    ratio = min(max(settings.sampler_ratio, 0.0), 1.0)
    provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(ratio)))
    endpoint = settings.otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def init_otel(
    settings: Optional[ObservabilityOTelConfig] = None,
    *,
    service_name: Optional[str] = None,
) -> bool:
    """Install the global tracer provider on first use.

    The first call decides whether tracing is on for the whole process. Later
    calls only register another user so ``shutdown_otel`` flushes once, after
    the last service closes.
    """
    global _enabled, _provider, _users

    with _state_lock:
        if _enabled is None:
            settings = settings or ObservabilityOTelConfig()
            _enabled = bool(settings.enabled)
            if _enabled:
                _provider = _build_provider(settings, service_name)
                trace.set_tracer_provider(_provider)
                logger.info(
                    "OpenTelemetry enabled service=%s endpoint=%s sampler_ratio=%s",
                    service_name or settings.service_name,
                    settings.otlp_endpoint or "default",
                    settings.sampler_ratio,
                )
        if not _enabled:
            return False
        _users += 1
        return True


def shutdown_otel() -> None:
    global _users

    with _state_lock:
        _users = max(_users - 1, 0)
        if _users:
            return
        provider = _provider

    if provider is not None:
        try:
            provider.force_flush()
        except Exception as exc:  # noqa: BLE001
            logger.warning("OpenTelemetry flush failed: %s", exc)


def get_tracer(name: str) -> Any:
    return trace.get_tracer(name)


def _clean_span_attributes(attributes: Mapping[str, Any] | None) -> Dict[str, Any]:
    if not attributes:
        return {}
    return {str(key): value for key, value in attributes.items() if value is not None}


@contextmanager
def start_span(
    tracer: Any,
    name: str,
    *,
    attributes: Mapping[str, Any] | None = None,
    mark_error_on_exception: bool = False,
    **kwargs: Any,
) -> Iterator[Any]:
    span_kwargs: Dict[str, Any] = dict(kwargs)
    cleaned_attrs = _clean_span_attributes(attributes)
    if cleaned_attrs:
        span_kwargs["attributes"] = cleaned_attrs
    with tracer.start_as_current_span(name, **span_kwargs) as span:
        try:
            yield span
        except Exception as exc:
            if mark_error_on_exception:
                mark_span_error(span, exc)
            raise


def traced(
    tracer: Any,
    name: str,
    *,
    mark_error_on_exception: bool = False,
    span_arg: Optional[str] = None,
    attributes_getter: Optional[Callable[[Mapping[str, Any]], Mapping[str, Any] | None]] = None,
    **span_kwargs: Any,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Wrap a coroutine function in a span.

    ``attributes_getter`` receives the bound call arguments by name; ``span_arg``
    names a keyword parameter that receives the live span.
    """

    def _decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if not inspect.iscoroutinefunction(func):
            raise TypeError("traced only wraps coroutine functions")
        signature = inspect.signature(func)

        @wraps(func)
        async def _wrapped(*args: Any, **kwargs: Any) -> Any:
            attributes = None
            if attributes_getter is not None:
                attributes = attributes_getter(dict(signature.bind_partial(*args, **kwargs).arguments))
            with start_span(
                tracer,
                name,
                attributes=attributes,
                mark_error_on_exception=mark_error_on_exception,
                **span_kwargs,
            ) as span:
                if span_arg:
                    kwargs = dict(kwargs)
                    kwargs[span_arg] = span
                return await func(*args, **kwargs)

        return _wrapped

    return _decorator


def inject_context_to_headers(headers: MutableMapping[str, str]) -> MutableMapping[str, str]:
    # An explicit traceparent supplied by the caller is kept.
    injected: Dict[str, str] = {}
    otel_inject(injected)
    for key, value in injected.items():
        if not headers.get(key):
            headers[key] = value
    return headers


def compact_error_message(exc: BaseException, *, max_len: int = 512) -> str:
    text = str(exc).strip()
    if "\n" in text:
        text = text.splitlines()[0].strip()
    if not text:
        text = type(exc).__name__
    return text[:max_len]


def mark_span_error(span: Any, exc: BaseException, *, include_exception: bool = True) -> None:
    if span is None:
        return
    summary = compact_error_message(exc)
    if include_exception:
        span.record_exception(exc)
    span.set_attribute("aq.error.type", type(exc).__name__)
    span.set_attribute("aq.error.message", summary)
    span.set_status(Status(StatusCode.ERROR, description=summary))
