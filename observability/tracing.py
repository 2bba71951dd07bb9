"""
OpenTelemetry Tracing
=====================

Installs the tracer provider and OTLP exporter that the pipeline spans
(``session.run``, ``session.step.*``, ``sql.validate``, ``cost_guard.evaluate``,
``sql.execute``) report to, and instruments the FastAPI app.
"""

import os
from typing import Optional

import structlog
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

logger = structlog.get_logger(__name__)

# Probes and scrapes would drown out the session traces
EXCLUDED_URLS = "health,ready,live,metrics"


def _sample_ratio() -> float:
    try:
        ratio = float(os.getenv("OTEL_TRACES_SAMPLER_ARG", "1.0"))
    except ValueError:
        return 1.0
    return min(max(ratio, 0.0), 1.0)


def setup_tracing(
    app: FastAPI,
    service_name: str = "report-pilot-api",
    otlp_endpoint: Optional[str] = None,
    version: str = "0.1.0",
) -> None:
    """
    Set up OpenTelemetry tracing for the application.

    Args:
        app: FastAPI application instance
        service_name: Reported service name
        otlp_endpoint: OTLP collector endpoint (default: ``OTEL_EXPORTER_OTLP_ENDPOINT``)
        version: Reported service version
    """
    endpoint = otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    ratio = _sample_ratio()

    resource = Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: version,
        "deployment.environment": os.getenv("ENVIRONMENT", "development"),
    })
    provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(ratio)))

    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    else:
        logger.warning("otlp_endpoint_missing", detail="spans are recorded but not exported")

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)
    logger.info("tracing_configured", service_name=service_name, endpoint=endpoint, sample_ratio=ratio)
