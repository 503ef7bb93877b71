"""
OpenTelemetry tracing for enqueue, drain and stall-recovery paths.

Each process installs one tracer provider at start-up. With
``TRACING_ENABLED=false`` nothing is installed and spans come from the
API's no-op provider, so instrumented code never has to check the flag.
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Tracer

from kvqueue import __version__
from kvqueue.config import get_settings

logger = logging.getLogger(__name__)

_tracer: Tracer | None = None


def _build_provider(service_name: str, endpoint: str) -> TracerProvider:
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, "service.version": __version__})
    )
    try:
        exporter = OTLPSpanExporter(endpoint=endpoint, insecure=True)
    except Exception as e:
        # Spans are still created; they just go nowhere
        logger.warning(
            "OTLP exporter unavailable", extra={"endpoint": endpoint, "error": str(e)}
        )
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def setup_tracing() -> Tracer:
    """
    Install the process tracer provider and return the kvqueue tracer.

    Returns:
        Tracer: Exporting tracer, or the no-op tracer when tracing is off.
    """
    global _tracer

    settings = get_settings()
    if settings.tracing_enabled:
        trace.set_tracer_provider(
            _build_provider(settings.otel_service_name, settings.otel_exporter_otlp_endpoint)
        )
    _tracer = trace.get_tracer(settings.otel_service_name, __version__)
    return _tracer


def instrument_fastapi(app: Any) -> None:
    """Wrap every API route in a server span when tracing is on."""
    if get_settings().tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def get_tracer() -> Tracer:
    """Return the kvqueue tracer, installing it on first use."""
    if _tracer is None:
        return setup_tracing()
    return _tracer
