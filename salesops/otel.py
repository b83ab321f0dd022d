from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span

from salesops.context import get_correlation_id, get_session_key
from salesops.core.config import get_settings


SALES_TRACER = "salesops.sales"
_REQUEST_HEADER_ATTRIBUTES = {
    b"x-correlation-id": "correlation_id",
    b"x-team-id": "team_id",
    b"x-session-id": "session_key",
    b"x-user-id": "user_id",
}

_exporters_attached = False
_provider: TracerProvider | None = None


def _provider_for(service_name: str) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    settings = get_settings()
    _provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": service_name,
                "service.namespace": "salesops",
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
    )
    trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str | None = None) -> TracerProvider | None:
    """Install the process tracer provider when tracing is switched on in settings."""
    global _exporters_attached

    settings = get_settings()
    if not settings.otel_enabled:
        return None

    provider = _provider_for(service_name or settings.otel_service_name)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str | None = None) -> InMemorySpanExporter:
    provider = _provider_for(service_name or get_settings().otel_service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


@contextmanager
def sales_span(name: str, *, correlation_id: str | None = None, **attributes: Any) -> Iterator[Span]:
    """Open a span for a sales operation, stamped with the ambient request context.

    ``None`` attributes are skipped and UUIDs are written as strings.
    """
    tracer = trace.get_tracer(SALES_TRACER)
    with tracer.start_as_current_span(name) as span:
        span.set_attribute("correlation_id", correlation_id or get_correlation_id() or "")
        session_key = get_session_key()
        if session_key:
            span.set_attribute("session_key", session_key)
        for key, value in attributes.items():
            if value is None:
                continue
            span.set_attribute(key, str(value) if isinstance(value, uuid.UUID) else value)
        yield span


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        for header, attribute in _REQUEST_HEADER_ATTRIBUTES.items():
            raw = headers.get(header)
            if raw:
                span.set_attribute(attribute, raw.decode("utf-8"))

    return server_request_hook
