"""OpenTelemetry tracing setup for the access gating service."""

import os
from typing import Optional, Dict, Any

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from shared.logging import get_logger


def _build_otlp_exporter_kwargs(endpoint_override: Optional[str] = None) -> Dict[str, Any]:
    endpoint = (
        endpoint_override
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        or "http://otel-collector:4317"
    )
    exporter_kwargs: Dict[str, Any] = {"endpoint": endpoint}

    headers_env = os.getenv("OTEL_EXPORTER_OTLP_HEADERS")
    if headers_env:
        headers = {}
        for segment in headers_env.split(","):
            if "=" not in segment:
                continue
            key, value = segment.split("=", 1)
            if key.strip():
                headers[key.strip()] = value.strip()
        if headers:
            exporter_kwargs["headers"] = headers

    if endpoint.startswith("http://"):
        exporter_kwargs["insecure"] = True

    return exporter_kwargs


def configure_tracing(service_name: str, otel_exporter: Optional[str] = None, app: Optional[FastAPI] = None) -> None:
    """Install a tracer provider exporting over OTLP and instrument ``app``."""
    resource = Resource.create({
        "service.name": service_name,
        "service.version": "1.0.0",
        "service.namespace": "lms",
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**_build_otlp_exporter_kwargs(otel_exporter))))
    trace.set_tracer_provider(provider)

    if app is not None:
        FastAPIInstrumentor.instrument_app(app)

    get_logger(f"{service_name}.tracing").info("Tracing configured", exporter=otel_exporter)


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer; a no-op tracer until ``configure_tracing`` has run."""
    return trace.get_tracer(name)
