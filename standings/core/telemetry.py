"""Tracing and log correlation shared by the API and the worker.

Both processes build one ``TracerProvider`` from their settings. Spans are
exported over OTLP/HTTP when an endpoint is configured and stay in-process
otherwise. Log lines carry the active trace and span ids so they can be
joined with exported traces.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Protocol

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16

logger = logging.getLogger(__name__)


class TelemetrySettings(Protocol):
    environment: str
    otel_enabled: bool
    otel_service_name: str
    otel_exporter_otlp_endpoint: str | None
    otel_exporter_otlp_headers: str | None
    otel_trace_sample_ratio: float
    otel_log_correlation: bool


class TraceContextFilter(logging.Filter):
    """Stamps ``trace_id`` and ``span_id`` onto every record passing a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = _EMPTY_TRACE_ID
            record.span_id = _EMPTY_SPAN_ID
        return True


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None = None
    app: FastAPI | None = None
    httpx_instrumentor: HTTPXClientInstrumentor | None = None
    exporting: bool = False

    def shutdown(self) -> None:
        if not self.enabled:
            return
        if self.app is not None:
            FastAPIInstrumentor.uninstrument_app(self.app)
            self.app = None
        if self.httpx_instrumentor is not None:
            self.httpx_instrumentor.uninstrument()
            self.httpx_instrumentor = None
        if self.provider is not None:
            self.provider.force_flush()
            self.provider.shutdown()
        self.enabled = False


def configure_logging(level: int = logging.INFO) -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    for handler in root.handlers:
        if not any(isinstance(existing, TraceContextFilter) for existing in handler.filters):
            handler.addFilter(TraceContextFilter())


def setup_telemetry(
    settings: TelemetrySettings,
    *,
    app: FastAPI | None = None,
    instrument_httpx: bool = False,
) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False)

    if settings.otel_log_correlation:
        configure_logging()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    runtime = TelemetryRuntime(enabled=True, provider=provider, exporting=exporter is not None)
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
        runtime.app = app
    if instrument_httpx:
        runtime.httpx_instrumentor = HTTPXClientInstrumentor()
        runtime.httpx_instrumentor.instrument(tracer_provider=provider)
    return runtime


def build_exporter(settings: TelemetrySettings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("no OTLP endpoint configured; spans for %s are not exported", settings.otel_service_name)
        return None

    headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; entries without ``=`` are ignored."""
    if not raw:
        return {}
    headers: dict[str, str] = {}
    for item in raw.split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers
