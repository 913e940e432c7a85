"""OpenTelemetry wiring.

Actions always open spans through the OpenTelemetry API. Without a configured
provider those spans are no-ops; ``configure_tracing`` installs an SDK
provider when the settings ask for an exporter.
"""

from __future__ import annotations

import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from durable_flows.config import FlowSettings

logger = logging.getLogger(__name__)

TRACER_NAME = "durable_flows"


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


def configure_tracing(settings: FlowSettings) -> TracerProvider | None:
    """Install a global tracer provider for the configured exporter.

    Returns the provider, or ``None`` when tracing is disabled.
    """

    if settings.tracing == "none":
        logger.debug("Tracing disabled")
        return None

    provider = TracerProvider(resource=Resource.create({"service.name": "durable-flows"}))
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    logger.info("Tracing configured", extra={"exporter": settings.tracing})
    return provider
