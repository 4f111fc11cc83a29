"""OpenTelemetry tracing for gateway operations and the producer/consumer scripts.

Every gateway operation runs in a span named ``broker.<operation>`` carrying
OpenTelemetry messaging attributes (``messaging.system``,
``messaging.destination.name``). Until ``start_tracing`` installs an SDK
provider the global no-op provider is used, so library users pay nothing.

AMQP is the only backend with per-message headers; the RabbitMQ adapter
injects the current context on publish and the consumer script extracts it.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional

from opentelemetry import trace  # type: ignore
from opentelemetry.propagate import get_global_textmap, inject, set_global_textmap  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor  # type: ignore
from opentelemetry.trace import Span, Tracer  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore


TRACER_NAME = "broker-gateway"

_provider: Optional[TracerProvider] = None


def start_tracing(service_name: str = TRACER_NAME) -> Tracer:
    """Install a console-exporting TracerProvider once per process.

    ``TRACING_ENABLED=false`` leaves the no-op provider in place.
    """
    global _provider
    enabled = os.getenv("TRACING_ENABLED", "true").lower() in {"1", "true", "yes"}
    if enabled and _provider is None:
        _provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        _provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(_provider)
        # W3C tracecontext for message headers
        set_global_textmap(TraceContextTextMapPropagator())
    return trace.get_tracer(service_name)


def get_tracer(service_name: str = TRACER_NAME) -> Tracer:
    return trace.get_tracer(service_name)


@contextmanager
def operation_span(tracer: Tracer, operation: str, broker: str, topic: Optional[str] = None) -> Iterator[Span]:
    """Open ``broker.<operation>`` with messaging attributes; mark it on error."""
    with tracer.start_as_current_span(f"broker.{operation}") as span:
        span.set_attribute("messaging.system", broker)
        span.set_attribute("messaging.operation", operation)
        if topic is not None:
            span.set_attribute("messaging.destination.name", topic)
        try:
            yield span
        except Exception:
            span.set_attribute("error", True)
            raise


def inject_headers(headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Return ``headers`` plus the current trace context."""
    carrier: Dict[str, str] = {} if headers is None else dict(headers)
    inject(carrier)
    return carrier


def extract_context_from_headers(headers: Optional[Mapping[str, Any]]):
    """Return the context carried by message headers.

    aio-pika may hand header values back as bytes; they are decoded first.
    """
    carrier: Dict[str, str] = {}
    for key, value in (headers or {}).items():
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        carrier[str(key)] = value if isinstance(value, str) else str(value)
    return get_global_textmap().extract(carrier)
