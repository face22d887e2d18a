from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import logging
import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from auditor.core.config import Settings

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s "
    "trace_id=%(trace_id)s span_id=%(span_id)s audit_id=%(audit_id)s %(message)s"
)
NO_TRACE_ID = "0" * 32
NO_SPAN_ID = "0" * 16

_current_audit_id: ContextVar[str] = ContextVar("auditor_audit_id", default="-")
_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    role: str
    enabled: bool
    provider: TracerProvider | None = None
    app: Any | None = None


@contextmanager
def bind_audit(audit_id: str) -> Iterator[None]:
    """Tags every log record emitted inside the block with the audit id."""
    token = _current_audit_id.set(audit_id)
    try:
        yield
    finally:
        _current_audit_id.reset(token)


def configure_logging(settings: Settings | None = None) -> None:
    _install_record_factory()
    root = logging.getLogger()
    if root.handlers:
        return
    level = (settings.log_level if settings is not None else "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_telemetry(settings: Settings, *, role: str, app: Any | None = None) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(role=role, enabled=False)

    if settings.otel_log_correlation:
        _install_record_factory()

    provider = _build_provider(settings, role)
    trace.set_tracer_provider(provider)
    _httpx_instrumentor.instrument()
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    logging.getLogger(__name__).info(
        "telemetry enabled service=%s role=%s sample_ratio=%s",
        settings.otel_service_name,
        role,
        settings.otel_trace_sample_ratio,
    )
    return TelemetryRuntime(role=role, enabled=True, provider=provider, app=app)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
    _httpx_instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _build_provider(settings: Settings, role: str) -> TracerProvider:
    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "auditor.role": role,
        }
    )
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logging.getLogger(__name__).info("no OTLP endpoint configured; spans stay in-process role=%s", role)
        return provider

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    return provider


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _install_record_factory() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _base_record_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else NO_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else NO_SPAN_ID
        record.audit_id = _current_audit_id.get()
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
