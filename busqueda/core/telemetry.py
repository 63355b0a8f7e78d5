from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from busqueda.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16
_ENDPOINT_ENV_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")

_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    app: FastAPI | None = None


def configure_logging(level: str = "INFO") -> None:
    """Route stdlib logging through a trace-aware format.

    Safe to call more than once; an existing root handler (uvicorn, pytest) is
    kept as is.
    """
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def setup_telemetry(settings: Settings, app: FastAPI | None = None) -> TelemetryRuntime:
    configure_logging(settings.log_level)
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "busqueda.storage_backend": settings.storage_backend,
        }
    )
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))
    exporter = _otlp_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    # Upstream pulls carry the sweep span into the source systems.
    _httpx_instrumentor.instrument()
    runtime = TelemetryRuntime(enabled=True, provider=provider)
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
        runtime.app = app
    return runtime


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
        runtime.app = None
    _httpx_instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()
    runtime.enabled = False


def _otlp_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = settings.otel_exporter_otlp_endpoint or next(
        (os.environ[name] for name in _ENDPOINT_ENV_VARS if os.environ.get(name)),
        None,
    )
    if not endpoint:
        logger.info("no OTLP endpoint configured; spans stay in-process service=%s", settings.otel_service_name)
        return None

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; entries without ``=`` or with an empty key are skipped."""
    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _base_record_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else _EMPTY_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else _EMPTY_SPAN_ID
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
