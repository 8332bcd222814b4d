"""Distributed tracing configuration for the embedder daemon.

Wraps OpenTelemetry setup with an OTLP/HTTP exporter and optional
auto‑instrumentation for FastAPI and HTTPX. Also provides a scoped span
context manager and model‑specific helpers used by the embedder manager.
"""

import os
from typing import Optional

from opentelemetry import context, trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode
import structlog

logger = structlog.get_logger("tracing")


def configure_tracing(
    service_name: str,
    otlp_endpoint: str = "http://localhost:4318/v1/traces",
    enable_instrumentation: bool = True
) -> Optional[trace.Tracer]:
    """Configure distributed tracing for a service.

    Parameters
    - service_name: Logical service identifier used in trace resources
    - otlp_endpoint: Collector endpoint for exporting spans
    - enable_instrumentation: Toggle HTTPX client instrumentation; FastAPI
      apps are instrumented separately with ``instrument_app``

    Returns
    - A tracer instance for ad‑hoc span creation, or ``None`` on failure
    """
    try:
        tracer_provider = TracerProvider(
            resource=Resource.create({
                "service.name": service_name,
                "service.version": "0.1.0",
                "deployment.environment": os.getenv("ML_ENV", "local")
            })
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
        )
        trace.set_tracer_provider(tracer_provider)

        if enable_instrumentation:
            try:
                HTTPXClientInstrumentor().instrument()
                logger.info("Automatic instrumentation enabled")
            except Exception as e:
                # Partial failure is acceptable; log but continue.
                logger.warning("Failed to enable instrumentation", error=str(e))

        logger.info(
            "Distributed tracing configured",
            service_name=service_name,
            otlp_endpoint=otlp_endpoint
        )
        return trace.get_tracer(service_name)

    except Exception as e:
        logger.error("Failed to configure tracing", error=str(e))
        return None


def instrument_app(app) -> None:
    """Add server spans to every request handled by a FastAPI app."""
    try:
        FastAPIInstrumentor.instrument_app(app)
    except Exception as e:
        logger.warning("Failed to instrument FastAPI app", error=str(e))


class TracingContext:
    """Context manager for tracing operations.

    Starts a span on entry and ensures it ends, recording success or error.
    """

    def __init__(self, tracer: trace.Tracer, operation_name: str, **attributes):
        self.tracer = tracer
        self.operation_name = operation_name
        self.attributes = attributes
        self.span: Optional[trace.Span] = None
        self._token = None

    def __enter__(self):
        self.span = self.tracer.start_span(self.operation_name)
        for key, value in self.attributes.items():
            self.span.set_attribute(key, str(value))
        # Current for the duration so HTTPX client spans nest under it
        self._token = context.attach(trace.set_span_in_context(self.span))
        return self.span

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            context.detach(self._token)
            self._token = None
        if self.span:
            if exc_type is not None:
                self.span.set_status(Status(StatusCode.ERROR, f"{exc_type.__name__}: {exc_val}"))
            else:
                self.span.set_status(Status(StatusCode.OK))
            self.span.end()


class EmbedderTracer:
    """Span helpers so names and attributes stay consistent across the service."""

    def __init__(self, service_name: str):
        self.service_name = service_name
        self.tracer = trace.get_tracer(service_name)

    def trace_model_construction(self, model_class: str, model_name: str, **attributes):
        """Trace building an embedder (asset provisioning, sessions, tokenizer)."""
        return TracingContext(
            self.tracer,
            "embedder.construct",
            model_class=model_class,
            model_name=model_name,
            **attributes
        )

    def trace_encode(
        self,
        model_class: str,
        model_name: str,
        payload_kind: str,
        batch_size: int,
        **attributes
    ):
        """Trace one encode call."""
        return TracingContext(
            self.tracer,
            "embedder.encode",
            model_class=model_class,
            model_name=model_name,
            payload_kind=payload_kind,
            batch_size=batch_size,
            **attributes
        )


def get_embedder_tracer(service_name: str) -> EmbedderTracer:
    """Get the embedder span helper for a service."""
    return EmbedderTracer(service_name)
