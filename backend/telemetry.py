# telemetry.py — OpenTelemetry tracing for Berthwise
"""
Exports spans to an OTLP collector when OTEL_EXPORTER_OTLP_ENDPOINT is set.
Without an endpoint, or without the optional `telemetry` extra installed,
setup is a logged no-op.
"""
import os
import logging

logger = logging.getLogger("berthwise.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "berthwise-api")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")


def setup_telemetry(app=None, engine=None):
    """Register a tracer provider and instrument FastAPI and the DB engine."""
    if not OTLP_ENDPOINT:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.info("OpenTelemetry SDK not installed — tracing disabled")
        return None

    try:
        resource = Resource.create({
            RES_SVC_NAME: SERVICE_NAME,
            "service.version": SERVICE_VERSION,
            "deployment.environment": ENVIRONMENT,
        })
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
        trace.set_tracer_provider(provider)

        if app is not None:
            try:
                from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
                FastAPIInstrumentor.instrument_app(
                    app,
                    excluded_urls="health,ws/stats",
                    tracer_provider=provider,
                )
                logger.info("FastAPI instrumented with OpenTelemetry")
            except ImportError:
                logger.warning("opentelemetry-instrumentation-fastapi not installed")

        if engine is not None:
            try:
                from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
                # Async engines are instrumented through their sync core
                SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=provider)
                logger.info("SQLAlchemy instrumented with OpenTelemetry")
            except ImportError:
                logger.warning("opentelemetry-instrumentation-sqlalchemy not installed")

        logger.info(f"OpenTelemetry initialised → {OTLP_ENDPOINT}")
        return provider

    except Exception as e:
        logger.error(f"OpenTelemetry setup failed: {e}")
        return None
