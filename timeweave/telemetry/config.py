"""
OpenTelemetry configuration for Timeweave.

Configures the tracer provider, meter provider, and OTLP exporters. When
telemetry is disabled the OpenTelemetry API hands out no-op tracers.
"""

import logging
from functools import lru_cache
from typing import Optional

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from timeweave import __version__
from timeweave.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# Global state
_telemetry_configured = False
_tracer_provider: Optional[TracerProvider] = None
_meter_provider: Optional[MeterProvider] = None


def configure_telemetry(
    settings: Optional[Settings] = None,
    enable_logging: bool = True,
) -> bool:
    """
    Configure OpenTelemetry for the process.

    Does nothing unless ``otel_enabled`` is set.

    Args:
        settings: Settings to read the endpoint and service name from
        enable_logging: Whether to enable log correlation with traces

    Returns:
        True if providers were installed
    """
    global _telemetry_configured, _tracer_provider, _meter_provider

    settings = settings or get_settings()
    if not settings.otel_enabled:
        logger.debug("Telemetry disabled, using no-op tracer")
        return False

    if _telemetry_configured:
        logger.warning("Telemetry already configured, skipping reconfiguration")
        return True

    logger.info(
        f"Configuring OpenTelemetry: service={settings.service_name}, "
        f"endpoint={settings.otel_endpoint}"
    )

    resource = Resource.create({
        SERVICE_NAME: settings.service_name,
        SERVICE_VERSION: __version__,
    })

    _tracer_provider = TracerProvider(resource=resource)
    _tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_endpoint, insecure=True))
    )
    trace.set_tracer_provider(_tracer_provider)

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=settings.otel_endpoint, insecure=True),
        export_interval_millis=60000,
    )
    _meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(_meter_provider)

    if enable_logging:
        LoggingInstrumentor().instrument(set_logging_format=True)

    _telemetry_configured = True
    logger.info("OpenTelemetry configured successfully")
    return True


def shutdown_telemetry() -> None:
    """Flush and shut down telemetry providers."""
    global _telemetry_configured, _tracer_provider, _meter_provider

    if not _telemetry_configured:
        return

    if _tracer_provider:
        _tracer_provider.force_flush()
        _tracer_provider.shutdown()
        _tracer_provider = None

    if _meter_provider:
        _meter_provider.shutdown()
        _meter_provider = None

    _telemetry_configured = False
    logger.info("OpenTelemetry shutdown complete")


@lru_cache(maxsize=32)
def get_tracer(name: str = "timeweave") -> trace.Tracer:
    """
    Get a tracer instance for creating spans.

    Args:
        name: Name of the tracer (typically the module name)

    Returns:
        Tracer instance (no-op if telemetry is not configured)
    """
    return trace.get_tracer(name)


@lru_cache(maxsize=32)
def get_meter(name: str = "timeweave") -> metrics.Meter:
    """Get a meter instance for creating metrics."""
    return metrics.get_meter(name)


def is_telemetry_configured() -> bool:
    """Check if telemetry has been configured."""
    return _telemetry_configured
