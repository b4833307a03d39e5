"""
Telemetry for the ranking engine.

Engine-level Prometheus series are declared here so every component shares one
registry; `setup_telemetry` adds HTTP instrumentation and, when enabled,
OpenTelemetry tracing exported over OTLP.
"""
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Counter, Gauge, Histogram
from prometheus_fastapi_instrumentator import Instrumentator

from feedrank.config import Settings, get_settings

DEGRADED_EVENTS = Counter(
    "feedrank_degraded_events_total",
    "Ranking requests that bypassed a subsystem",
    ["subsystem"],
)
FEED_CACHE_LOOKUPS = Counter(
    "feedrank_feed_cache_lookups_total",
    "Feed cache lookups by outcome",
    ["outcome"],
)
FEEDBACK_EVENTS = Counter(
    "feedrank_feedback_events_total",
    "Interaction events handled by the session optimizer",
    ["outcome"],
)
RANKING_LATENCY = Histogram(
    "feedrank_ranking_latency_seconds",
    "End-to-end latency of rank() calls",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.15, 0.25, 0.5, 1.0),
)
BREAKER_STATE = Gauge(
    "feedrank_circuit_breaker_state",
    "0 closed, 1 half-open, 2 open",
    ["breaker"],
)

tracer = trace.get_tracer("feedrank")

# Health checks and the scrape endpoint would otherwise dominate the latency histograms
UNINSTRUMENTED_PATHS = ["/metrics", "/health", "/health/ready"]


def _setup_prometheus(app: FastAPI) -> None:
    Instrumentator(
        should_group_status_codes=False,
        should_ignore_untemplated=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=UNINSTRUMENTED_PATHS,
        inprogress_name="feedrank_http_requests_inprogress",
        inprogress_labels=True,
    ).instrument(app).expose(app, include_in_schema=False)


def _setup_tracing(app: FastAPI, settings: Settings) -> None:
    resource = Resource.create(attributes={
        "service.name": "feedrank",
        "service.version": settings.APP_VERSION,
        "feedrank.algorithm_version": settings.ALGORITHM_VERSION,
        "deployment.environment": "development" if settings.DEBUG else "production",
    })
    provider = TracerProvider(resource=resource)

    # Without an endpoint the exporter falls back to OTEL_EXPORTER_OTLP_ENDPOINT / localhost:4317
    if settings.OTEL_EXPORTER_ENDPOINT:
        exporter = OTLPSpanExporter(endpoint=settings.OTEL_EXPORTER_ENDPOINT)
    else:
        exporter = OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=provider,
        excluded_urls=",".join(UNINSTRUMENTED_PATHS),
    )


def setup_telemetry(app: FastAPI) -> None:
    """Attach metrics and tracing according to ENABLE_PROMETHEUS / ENABLE_OTEL."""
    settings = get_settings()
    if settings.ENABLE_PROMETHEUS:
        _setup_prometheus(app)
    if settings.ENABLE_OTEL:
        _setup_tracing(app, settings)
