"""Optional OpenTelemetry tracing for the API and both databases."""
from __future__ import annotations

import logging

from automember import __version__
from automember.config import settings

logger = logging.getLogger(__name__)


def setup_opentelemetry(app=None, engines=()) -> bool:
    """Trace HTTP requests plus staging and registry SQL when enabled.

    Off unless ``OTEL_ENABLED``; a missing SDK only logs. Returns whether a
    tracer provider was installed by this call.
    """
    if not settings.OTEL_ENABLED:
        return False
    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
    except ImportError as exc:
        logger.warning("OTEL_ENABLED is set but the SDK is not installed: %s", exc)
        return False

    if trace.get_tracer_provider().__class__.__name__ != "ProxyTracerProvider":
        return False

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.OTEL_SERVICE_NAME,
                "service.version": __version__,
                "deployment.environment": settings.APP_ENV,
            }
        )
    )
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)

    if app is not None:
        try:
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

            # Metric scrapes and health checks would dominate the trace volume.
            FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
        except ImportError as exc:
            logger.info("FastAPI tracing unavailable: %s", exc)

    if engines:
        try:
            from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

            SQLAlchemyInstrumentor().instrument(
                engines=[engine.sync_engine for engine in engines]
            )
        except ImportError as exc:
            logger.info("SQLAlchemy tracing unavailable: %s", exc)
    logger.info("OpenTelemetry tracing enabled for %s", settings.OTEL_SERVICE_NAME)
    return True
