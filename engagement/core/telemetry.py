from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Protocol

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_NAMESPACE, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from engagement.core.models import ScheduledJob, Subject

SERVICE_NAMESPACE_VALUE = "headache-vault"
COMPONENT_ATTRIBUTE = "engagement.component"

_CORRELATED_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()

logger = logging.getLogger(__name__)


class TelemetrySettings(Protocol):
    environment: str
    otel_enabled: bool
    otel_service_name: str
    otel_exporter_otlp_endpoint: str | None
    otel_exporter_otlp_headers: str | None
    otel_trace_sample_ratio: float


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


class TraceContextFilter(logging.Filter):
    """Stamps records with the ids of the span that was active when they were logged."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = "-"
            record.span_id = "-"
        return True


def configure_logging(*, correlate: bool = True) -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler()
    if correlate:
        handler.addFilter(TraceContextFilter())
        handler.setFormatter(logging.Formatter(_CORRELATED_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def build_resource(settings: TelemetrySettings, component: str) -> Resource:
    return Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            SERVICE_NAMESPACE: SERVICE_NAMESPACE_VALUE,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            COMPONENT_ATTRIBUTE: component,
        }
    )


def setup_telemetry(settings: TelemetrySettings, *, component: str) -> TelemetryRuntime:
    """Install the tracer provider for the api or worker process.

    Outbound httpx calls (Twilio, the dispatch entrypoint) are traced so a
    worker tick and the api-side dispatch span share one trace.
    """
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    provider = TracerProvider(
        resource=build_resource(settings, component),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def build_exporter(settings: TelemetrySettings) -> OTLPSpanExporter | None:
    if not settings.otel_exporter_otlp_endpoint:
        logger.info("no OTLP endpoint configured; spans stay local service=%s", settings.otel_service_name)
        return None
    return OTLPSpanExporter(
        endpoint=settings.otel_exporter_otlp_endpoint,
        headers=parse_otlp_headers(settings.otel_exporter_otlp_headers) or None,
    )


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            parsed[key.strip()] = value.strip()
    return parsed


def annotate_job(span: trace.Span, job: ScheduledJob) -> None:
    span.set_attribute("job.id", job.job_id)
    span.set_attribute("job.type", job.job_type.value)
    span.set_attribute("job.attempt", job.attempts + 1)
    span.set_attribute("job.max_attempts", job.max_attempts)
    span.set_attribute("subject.id", job.subject_id)


def annotate_subject(span: trace.Span, subject: Subject) -> None:
    # phone numbers and names stay out of span attributes
    span.set_attribute("subject.id", subject.subject_id)
    span.set_attribute("subject.state", subject.state.value)
    span.set_attribute("subject.day_count", subject.day_count)
