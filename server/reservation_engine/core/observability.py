"""Observability setup for OpenTelemetry, metrics, and structured logging."""

import logging

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from .config import settings

SERVICE_NAME = "vehicle-reservation-engine"

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Request metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=REGISTRY
)

# Business metrics
RESERVATIONS_CREATED = Counter(
    'reservations_created_total',
    'Total pending reservations created',
    ['currency'],
    registry=REGISTRY
)

RESERVATION_CONFLICTS = Counter(
    'reservation_conflicts_total',
    'Reservation attempts rejected because the dates overlap an active booking',
    registry=REGISTRY
)

BOOKING_TRANSITIONS = Counter(
    'booking_transitions_total',
    'Booking state machine decisions',
    ['event', 'to_status', 'outcome'],
    registry=REGISTRY
)

WEBHOOK_CALLBACKS = Counter(
    'payment_webhook_callbacks_total',
    'Payment provider callbacks by result',
    ['provider', 'result'],
    registry=REGISTRY
)

PAYMENT_SESSIONS_OPENED = Counter(
    'payment_sessions_opened_total',
    'Payment sessions opened with a provider',
    ['provider'],
    registry=REGISTRY
)

PROVIDER_REQUEST_DURATION = Histogram(
    'payment_provider_request_duration_seconds',
    'Payment provider HTTP call duration in seconds',
    ['provider', 'operation', 'outcome'],
    registry=REGISTRY
)

OUTBOX_BACKLOG = Gauge(
    'outbox_events_pending',
    'Domain events waiting for dispatch after the last outbox run',
    registry=REGISTRY
)


def setup_structured_logging():
    """Configure structured logging with structlog."""

    def add_trace_context(logger, method_name, event_dict):
        """Add trace context to log events."""
        span = trace.get_current_span()
        if span and span.is_recording():
            ctx = span.get_span_context()
            event_dict['trace_id'] = format(ctx.trace_id, '032x')
            event_dict['span_id'] = format(ctx.span_id, '016x')
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=getattr(logging, settings.log_level))


def _resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": "1.0.0",
        "environment": settings.environment,
    })


def setup_tracing():
    """Setup OpenTelemetry tracing."""
    trace.set_tracer_provider(TracerProvider(resource=_resource()))

    if settings.otlp_endpoint:
        span_processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint))
        trace.get_tracer_provider().add_span_processor(span_processor)

    return trace.get_tracer(__name__)


def setup_metrics():
    """Setup OpenTelemetry metrics."""
    if settings.otlp_endpoint:
        exporter = OTLPMetricExporter(endpoint=settings.otlp_endpoint)
        reader = PeriodicExportingMetricReader(exporter=exporter, export_interval_millis=60000)
        metrics.set_meter_provider(MeterProvider(resource=_resource(), metric_readers=[reader]))

    return metrics.get_meter(__name__)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine):
    """Instrument SQLAlchemy with OpenTelemetry."""
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


class MetricsCollector:
    """Collector for business metrics."""

    @staticmethod
    def record_reservation_created(currency: str):
        RESERVATIONS_CREATED.labels(currency=currency).inc()

    @staticmethod
    def record_reservation_conflict():
        RESERVATION_CONFLICTS.inc()

    @staticmethod
    def record_transition(event: str, to_status: str, outcome: str):
        """Record a state machine decision, applied or not."""
        BOOKING_TRANSITIONS.labels(event=event, to_status=to_status, outcome=outcome).inc()

    @staticmethod
    def record_webhook(provider: str, result: str):
        """Record how a provider callback was handled."""
        WEBHOOK_CALLBACKS.labels(provider=provider, result=result).inc()

    @staticmethod
    def record_payment_session_opened(provider: str):
        PAYMENT_SESSIONS_OPENED.labels(provider=provider).inc()

    @staticmethod
    def observe_provider_request(provider: str, operation: str, outcome: str, seconds: float):
        PROVIDER_REQUEST_DURATION.labels(provider=provider, operation=operation, outcome=outcome).observe(seconds)

    @staticmethod
    def set_outbox_backlog(count: int):
        OUTBOX_BACKLOG.set(count)


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)


# Global metrics collector instance
metrics_collector = MetricsCollector()
