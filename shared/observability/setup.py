import logging
import structlog
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

# OpenTelemetry
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from shared.config.settings import LOG_LEVEL, OTLP_ENDPOINT, OTEL_TRACING_ENABLED

# Health checks and the scrape endpoint are not business traffic
UNMEASURED_PATHS = ["/health", "/metrics"]


def add_otel_ids(logger, log_method, event_dict):
    """Puts the active trace/span ids on the log line so logs join up with Jaeger."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = trace.format_trace_id(ctx.trace_id)
        event_dict["span_id"] = trace.format_span_id(ctx.span_id)
    return event_dict


def configure_logging(level=LOG_LEVEL, service_name: str = None):
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_otel_ids,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    if service_name:
        structlog.contextvars.bind_contextvars(service=service_name)


def configure_tracing(app: FastAPI, service_name: str):
    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
    trace.set_tracer_provider(provider)

    # Incoming requests plus the outgoing catalog / payment / notification calls
    FastAPIInstrumentor.instrument_app(app, excluded_urls=",".join(UNMEASURED_PATHS))
    HTTPXClientInstrumentor().instrument()

    @app.on_event("shutdown")
    async def flush_spans():
        provider.shutdown()


def configure_metrics(app: FastAPI):
    # HTTP latency / status codes share /metrics with the order and SLA counters
    Instrumentator(excluded_handlers=UNMEASURED_PATHS).instrument(app).expose(app, include_in_schema=False)


def setup_observability(app: FastAPI, service_name: str):
    """
    Bootstraps logging, tracing and metrics for the app. Call once, before
    the app starts serving.

    Tracing is skipped with OTEL_TRACING_ENABLED=false (tests, laptops
    without a collector); logging and /metrics are always on.
    """
    configure_logging(service_name=service_name)
    if OTEL_TRACING_ENABLED:
        configure_tracing(app, service_name)
    configure_metrics(app)
