"""
OpenTelemetry instrumentation for Timeweave.

Tracing is a no-op until configure_telemetry() is called.
"""

from timeweave.telemetry.config import (
    configure_telemetry,
    get_meter,
    get_tracer,
    is_telemetry_configured,
    shutdown_telemetry,
)
from timeweave.telemetry.decorators import trace_async, trace_sync

__all__ = [
    "configure_telemetry",
    "get_meter",
    "get_tracer",
    "is_telemetry_configured",
    "shutdown_telemetry",
    "trace_async",
    "trace_sync",
]
