"""
Observability instrumentation for the MPI merge service.

1. **Structured Logging**
   - JSON lines with trace context and every ``extra`` field
   - Plain text when TESTING is set, for readable pytest output

2. **OpenTelemetry Tracing**
   - FastAPI request spans plus manual spans around merge and unmerge
   - OTLP gRPC export only when OTEL_ENABLED is set

3. **Prometheus Metrics**
   - HTTP request counter, duration histogram and in-flight gauge
   - Merge outcome and per-collection migration counters
   - Exposed at /metrics

Usage:
    from mpi.observability import setup_observability

    app = FastAPI()
    setup_observability(app)
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import FastAPI, Request, Response
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from pythonjsonlogger import jsonlogger

from mpi.core.config import settings

# Probe endpoints are polled constantly; keep them out of traces
EXCLUDED_TRACE_ENDPOINTS = frozenset({
    "/api/v1/health",
    "/api/v1/ready",
    "/metrics",
})


# =============================================================================
# Logging Configuration
# =============================================================================

# Standard LogRecord attributes plus fields the formatter sets itself
RESERVED_LOG_ATTRS = frozenset({
    "args", "asctime", "created", "exc_info", "exc_text", "filename",
    "funcName", "levelname", "levelno", "lineno", "module", "msecs",
    "message", "msg", "name", "pathname", "process", "processName",
    "relativeCreated", "stack_info", "thread", "threadName", "taskName",
    "trace_id", "span_id", "service",
})


class StructuredJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter adding service name, trace context and extra fields.

    Example output:
        {"timestamp": "2026-01-15T10:30:00Z", "level": "INFO",
         "logger": "mpi.audit", "message": "MPI_MERGE_COMPLETED",
         "service": "mpi-merge-service", "audit_event": "MPI_MERGE_COMPLETED",
         "merge_batch_id": "...", "completed": 16, "failed": 0}
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs, timestamp=True)
        self.service_name = settings.OTEL_SERVICE_NAME

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = self.service_name

        span = trace.get_current_span()
        if span and span.is_recording():
            ctx = span.get_span_context()
            log_record["trace_id"] = format(ctx.trace_id, "032x")
            log_record["span_id"] = format(ctx.span_id, "016x")

        for key, value in record.__dict__.items():
            if key not in RESERVED_LOG_ATTRS and not key.startswith("_") and key not in log_record:
                log_record[key] = value


def configure_logging(testing: bool | None = None) -> None:
    """Install the JSON handler on the root logger, or plain text under tests."""
    if testing is None:
        testing = settings.TESTING

    if testing:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            force=True,
        )
        return

    handler = logging.StreamHandler()
    handler.setLevel(logging.INFO)
    handler.setFormatter(StructuredJsonFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)


# =============================================================================
# OpenTelemetry Tracing Setup
# =============================================================================

def _create_trace_provider() -> TracerProvider:
    """
    Create the TracerProvider, exporting over OTLP gRPC when enabled.

    The BatchSpanProcessor drops spans when the collector is unreachable,
    so an unavailable collector never fails a request.
    """
    provider = TracerProvider(resource=Resource(attributes={
        SERVICE_NAME: settings.OTEL_SERVICE_NAME,
    }))
    if settings.OTEL_ENABLED:
        exporter = OTLPSpanExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


trace.set_tracer_provider(_create_trace_provider())

# Manual spans for merge operations:
#
# with tracer.start_as_current_span("mpi.merge_patients") as span:
#     span.set_attribute("mpi.merge_batch_id", str(batch_id))
tracer = trace.get_tracer("mpi")


# =============================================================================
# Prometheus Metrics Definitions
# =============================================================================

http_requests_total = Counter(
    name="http_requests_total",
    documentation="Total number of HTTP requests processed",
    labelnames=["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    name="http_request_duration_seconds",
    documentation="HTTP request duration in seconds",
    labelnames=["method", "endpoint"],
)

active_requests = Gauge(
    name="active_requests",
    documentation="Number of HTTP requests currently being processed",
)

# operation: merge | unmerge; outcome: success | partial | failed
merge_operations_total = Counter(
    name="mpi_merge_operations_total",
    documentation="Merge and unmerge operations by outcome",
    labelnames=["operation", "outcome"],
)

# operation: reassign | rollback; status: completed | failed | rolled_back
collection_migrations_total = Counter(
    name="mpi_collection_migrations_total",
    documentation="Dependent collection migrations by status",
    labelnames=["operation", "collection", "status"],
)


# =============================================================================
# Setup Function
# =============================================================================

def setup_observability(app: FastAPI) -> FastAPI:
    """
    Instrument a FastAPI application.

    Adds OpenTelemetry request tracing, the Prometheus metrics middleware
    and the /metrics endpoint.

    Args:
        app: FastAPI application instance to instrument

    Returns:
        The same application, for chaining
    """
    logger = logging.getLogger(__name__)

    FastAPIInstrumentor.instrument_app(
        app,
        excluded_urls=",".join(EXCLUDED_TRACE_ENDPOINTS),
    )

    @app.middleware("http")
    async def metrics_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        active_requests.inc()
        method = request.method
        path = request.url.path
        try:
            with http_request_duration_seconds.labels(method=method, endpoint=path).time():
                response = await call_next(request)
            http_requests_total.labels(
                method=method,
                endpoint=path,
                status=response.status_code,
            ).inc()
            return response
        finally:
            active_requests.dec()

    @app.get("/metrics", include_in_schema=False, tags=["monitoring"])
    async def get_metrics() -> Response:
        """Prometheus metrics in exposition format."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    logger.info(
        f"Observability configured for service '{settings.OTEL_SERVICE_NAME}' "
        f"(OTLP export {'enabled' if settings.OTEL_ENABLED else 'disabled'})"
    )
    return app
