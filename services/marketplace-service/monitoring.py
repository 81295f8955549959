"""Monitoring and observability setup.

Tracing and metrics always get real SDK providers so that spans and
counters can be recorded. The OTLP exporters are attached only when
``TELEMETRY_ENABLED`` is set; with telemetry off (tests, local runs
without a collector) the data simply stays in-process.
"""
import logging
from opentelemetry import trace, metrics
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
import pyroscope

from config import (
    OTEL_EXPORTER_OTLP_ENDPOINT,
    PYROSCOPE_SERVER,
    SERVICE_NAME,
    TELEMETRY_ENABLED
)

logger = logging.getLogger(__name__)


def init_tracing() -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing.

    Returns:
        Tracer instance
    """
    resource = Resource.create({"service.name": SERVICE_NAME})

    tracer_provider = TracerProvider(resource=resource)
    if TELEMETRY_ENABLED:
        otlp_span_exporter = OTLPSpanExporter(
            endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        tracer_provider.add_span_processor(BatchSpanProcessor(otlp_span_exporter))
        logger.info(f"Tracing initialized with endpoint: {OTEL_EXPORTER_OTLP_ENDPOINT}")
    trace.set_tracer_provider(tracer_provider)

    return trace.get_tracer(__name__)


def init_metrics() -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Returns:
        Meter instance
    """
    resource = Resource.create({"service.name": SERVICE_NAME})

    metric_readers = []
    if TELEMETRY_ENABLED:
        otlp_metric_exporter = OTLPMetricExporter(
            endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        metric_readers.append(PeriodicExportingMetricReader(
            otlp_metric_exporter,
            export_interval_millis=5000
        ))

    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=metric_readers
    )
    metrics.set_meter_provider(meter_provider)

    return metrics.get_meter(__name__)


def init_profiling() -> None:
    """Initialize Pyroscope profiling."""
    if not TELEMETRY_ENABLED:
        return
    try:
        pyroscope.configure(
            application_name=SERVICE_NAME,
            server_address=PYROSCOPE_SERVER,
            tags={"env": "production"}
        )
        logger.info(f"Profiling initialized with server: {PYROSCOPE_SERVER}")
    except Exception as e:
        logger.warning(f"Failed to initialize profiling: {e}")


tracer = init_tracing()
meter = init_metrics()

# Catalog metrics
products_created_counter = meter.create_counter(
    "marketplace.products.created",
    description="Total number of product listings created",
    unit="1"
)

products_deleted_counter = meter.create_counter(
    "marketplace.products.deleted",
    description="Total number of product listings deleted by their owners",
    unit="1"
)

storage_failures_counter = meter.create_counter(
    "marketplace.storage.failures",
    description="Blob storage operations that failed",
    unit="1"
)

# Messaging metrics
messages_sent_counter = meter.create_counter(
    "marketplace.messages.sent",
    description="Total number of messages sent between buyers and sellers",
    unit="1"
)

conversations_started_counter = meter.create_counter(
    "marketplace.conversations.started",
    description="Total number of conversations opened",
    unit="1"
)

# Order metrics
orders_placed_counter = meter.create_counter(
    "marketplace.orders.placed",
    description="Total number of orders placed",
    unit="1"
)

orders_failed_counter = meter.create_counter(
    "marketplace.orders.failed",
    description="Orders that failed and were compensated",
    unit="1"
)

order_amount_histogram = meter.create_histogram(
    "marketplace.orders.amount",
    description="Order total as submitted by the buyer",
    unit="1"
)

# Security monitoring metrics
auth_failures_counter = meter.create_counter(
    "marketplace.auth.failures",
    description="Total number of authentication failures",
    unit="1"
)

auth_attempts_counter = meter.create_counter(
    "marketplace.auth.attempts",
    description="Total number of authentication attempts",
    unit="1"
)

rate_limit_exceeded_counter = meter.create_counter(
    "marketplace.rate_limit.exceeded",
    description="Total number of rate limit violations",
    unit="1"
)
