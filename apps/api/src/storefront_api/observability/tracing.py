from __future__ import annotations

from typing import Dict

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.semconv.resource import ResourceAttributes

from storefront_api.core.settings import settings

_PROVIDER: TracerProvider | None = None


def parse_otlp_headers(raw: str | None) -> Dict[str, str] | None:
    """Parse ``key=value,key2=value2`` header strings used by OTLP exporters."""

    if not raw:
        return None
    headers: Dict[str, str] = {}
    for pair in raw.split(","):
        if "=" not in pair:
            continue
        key, value = pair.split("=", 1)
        if key.strip():
            headers[key.strip()] = value.strip()
    return headers or None


def configure_tracing(
    app: FastAPI,
    *,
    service_name: str,
    service_version: str,
    environment: str,
) -> None:
    """Install a process-wide tracer provider and instrument the FastAPI app.

    Spans are always created so log lines carry trace ids; they are only
    exported when an OTLP endpoint is configured.
    """

    global _PROVIDER

    if _PROVIDER is None:
        resource = Resource.create(
            {
                ResourceAttributes.SERVICE_NAME: service_name,
                ResourceAttributes.SERVICE_VERSION: service_version,
                ResourceAttributes.DEPLOYMENT_ENVIRONMENT: environment,
            }
        )
        _PROVIDER = TracerProvider(resource=resource)
        if settings.otel_exporter_otlp_endpoint:
            exporter = OTLPSpanExporter(
                endpoint=settings.otel_exporter_otlp_endpoint,
                headers=parse_otlp_headers(settings.otel_exporter_otlp_headers),
            )
            _PROVIDER.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(_PROVIDER)

    FastAPIInstrumentor.instrument_app(app, tracer_provider=_PROVIDER)


__all__ = ["configure_tracing", "parse_otlp_headers"]
