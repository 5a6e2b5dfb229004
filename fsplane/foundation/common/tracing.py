from __future__ import annotations

"""OpenTelemetry tracing utilities for fsplane.

``setup_tracing`` configures the global tracer provider once per process.
Spans are exported to an OTLP/HTTP backend when an endpoint is given (either
explicitly or through ``FSPLANE_OTEL_EXPORTER_ENDPOINT``); the special value
``console`` prints spans instead. Without an endpoint spans are recorded but
not exported.
"""

import logging
import os
from typing import Dict, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import inject
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

logger = logging.getLogger(__name__)

_INITIALISED = False


def setup_tracing(service_name: str, exporter_endpoint: Optional[str] = None) -> None:
    """Configure a global :class:`TracerProvider` if not already set."""
    global _INITIALISED
    if _INITIALISED:
        return

    endpoint = exporter_endpoint or os.getenv("FSPLANE_OTEL_EXPORTER_ENDPOINT")
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    if endpoint:
        if endpoint.strip().lower() == "console":
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        else:
            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
            )
    trace.set_tracer_provider(provider)
    _INITIALISED = True


def inject_trace_headers(headers: Dict[str, str]) -> None:
    """Inject the current span context into ``headers``."""
    inject(headers)


__all__ = ["setup_tracing", "inject_trace_headers"]
