from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from crmcore.core.config import Settings
from crmcore.metrics import route_group_for


_provider: TracerProvider | None = None
_exporting = False
_inmemory_exporter: InMemorySpanExporter | None = None


def _provider_for(service_name: str, environment: str) -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": os.getenv("APP_VERSION", "0.1.0"),
                "deployment.environment": environment,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings, service_name: str = "crmcore-api") -> TracerProvider | None:
    """Install the tracer provider and, when an OTLP endpoint is configured, a batch exporter."""
    global _exporting

    if not settings.otel_enabled:
        return None

    provider = _provider_for(service_name, settings.app_env)
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint and not _exporting:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        _exporting = True
    return provider


def setup_inmemory_otel(service_name: str = "crmcore-api") -> InMemorySpanExporter:
    global _inmemory_exporter

    if _inmemory_exporter is None:
        provider = _provider_for(service_name, "test")
        _inmemory_exporter = InMemorySpanExporter()
        provider.add_span_processor(SimpleSpanProcessor(_inmemory_exporter))
    return _inmemory_exporter


def annotate_actor_span(user_id: str, role: str) -> None:
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute("crm.actor.id", user_id)
        span.set_attribute("crm.actor.role", role)


def server_request_hook(span: Any, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    for name, value in scope.get("headers", []):
        if name == b"x-correlation-id":
            span.set_attribute("correlation_id", value.decode("latin-1"))
            break
    span.set_attribute("crm.route_group", route_group_for(scope.get("path", "")))
