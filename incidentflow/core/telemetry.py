from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from incidentflow.core.config import Settings

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CONTEXT_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()

UNBOUND = "-"
LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s correlation_id=%(correlation_id)s job_id=%(job_id)s "
    "trace_id=%(trace_id)s %(message)s"
)


@dataclass(frozen=True, slots=True)
class JobLogContext:
    """Identifiers stamped on every log record emitted while a job runs."""

    correlation_id: str
    job_id: str = UNBOUND
    job_type: str = UNBOUND


_JOB_LOG_CONTEXT: ContextVar[JobLogContext | None] = ContextVar("incidentflow_job_log_context", default=None)


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


@contextmanager
def bind_job_context(correlation_id: str, *, job_id: str = UNBOUND, job_type: str = UNBOUND) -> Iterator[JobLogContext]:
    """Tag log lines with the job's correlation id so EXTRACT and its CLUSTER follow-up join up.

    Each asyncio task copies the current context, so concurrent jobs on one
    worker keep their own identifiers.
    """
    bound = JobLogContext(correlation_id=correlation_id, job_id=job_id, job_type=job_type)
    token = _JOB_LOG_CONTEXT.set(bound)
    try:
        yield bound
    finally:
        _JOB_LOG_CONTEXT.reset(token)


def current_job_context() -> JobLogContext | None:
    return _JOB_LOG_CONTEXT.get()


def configure_logging(level: int | str = logging.INFO) -> None:
    install_log_context()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_telemetry(settings: Settings, *, service_name: str | None = None) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    resolved_service_name = service_name or settings.otel_service_name
    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: resolved_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if endpoint:
        headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logging.getLogger(__name__).info(
            "OTel exporter endpoint not set; spans remain local-only for service=%s",
            resolved_service_name,
        )
    trace.set_tracer_provider(provider)
    # The extraction client talks to its provider through httpx.
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def parse_headers(raw: str | None) -> dict[str, str]:
    if raw is None:
        return {}
    parsed: dict[str, str] = {}
    for item in raw.split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            parsed[key.strip()] = value.strip()
    return parsed


def install_log_context() -> None:
    """Add job identifiers and the active trace id to every LogRecord."""
    global _LOG_CONTEXT_INSTALLED
    if _LOG_CONTEXT_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        bound = _JOB_LOG_CONTEXT.get()
        record.correlation_id = bound.correlation_id if bound else UNBOUND
        record.job_id = bound.job_id if bound else UNBOUND
        record.job_type = bound.job_type if bound else UNBOUND
        span_context = trace.get_current_span().get_span_context()
        record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else UNBOUND
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CONTEXT_INSTALLED = True
