"""
OpenTelemetry tracing for Search Relay.

Traces go to Axiom over OTLP/HTTP. FastAPI is instrumented for inbound traffic
(admin calls and Apify webhooks), httpx for the outbound Apify calls. Worker
spans (webhook processing, deferred submissions) join the same provider.

Without AXIOM_API_TOKEN the module stays a no-op and spans created elsewhere
go to the default no-op tracer.
"""

import logging
import os

from fastapi import FastAPI

from search_relay.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Status polling is high-volume and carries no information worth tracing
EXCLUDED_URLS = "/health,/search/status"

_tracer_provider = None


def _build_provider(settings: Settings):
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(
        resource=Resource(attributes={SERVICE_NAME: settings.otel_service_name})
    )
    exporter = OTLPSpanExporter(
        endpoint=f"https://{settings.axiom_domain.rstrip('/')}/v1/traces",
        headers={
            "Authorization": f"Bearer {settings.axiom_api_token}",
            "X-Axiom-Dataset": settings.axiom_dataset,
        },
    )
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def setup_telemetry(app: FastAPI) -> None:
    """Install the tracer provider and instrument FastAPI and httpx."""
    global _tracer_provider

    settings = get_settings()
    if not settings.axiom_api_token:
        logger.info("AXIOM_API_TOKEN not set, telemetry disabled")
        return
    if _tracer_provider is not None:
        return

    os.environ.setdefault("OTEL_PYTHON_FASTAPI_EXCLUDED_URLS", EXCLUDED_URLS)

    try:
        from opentelemetry import trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

        provider = _build_provider(settings)
        trace.set_tracer_provider(provider)
        _tracer_provider = provider

        HTTPXClientInstrumentor().instrument()
        FastAPIInstrumentor.instrument_app(app)

        logger.info(
            f"Telemetry enabled: service={settings.otel_service_name}, "
            f"dataset={settings.axiom_dataset}"
        )
    except ImportError as e:
        logger.warning(f"OpenTelemetry packages not installed: {e}")
    except Exception as e:
        logger.warning(f"Failed to setup telemetry: {e}")


def shutdown_telemetry() -> None:
    """Flush pending spans. Safe to call when telemetry was never enabled."""
    global _tracer_provider
    if _tracer_provider is None:
        return
    try:
        _tracer_provider.force_flush()
        _tracer_provider.shutdown()
        logger.info("Telemetry shutdown complete")
    except Exception as e:
        logger.warning(f"Error during telemetry shutdown: {e}")
    finally:
        _tracer_provider = None
