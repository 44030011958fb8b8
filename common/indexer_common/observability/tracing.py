import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger(__name__)

DEFAULT_COLLECTOR = "http://localhost:4318"
TRACES_PATH = "/v1/traces"


def traces_endpoint(base: str) -> str:
    """Append the OTLP traces path unless the URL already ends with it."""
    base = base.rstrip("/")
    return base if base.endswith(TRACES_PATH) else base + TRACES_PATH


def init_tracing(service_name: str, endpoint: str | None = None) -> None:
    """
    Export spans for ``service_name`` over OTLP/HTTP.

    ``endpoint`` is the collector base URL; it defaults to
    ``$OTEL_EXPORTER_OTLP_ENDPOINT`` and then ``http://localhost:4318``.
    """
    url = traces_endpoint(endpoint or os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", DEFAULT_COLLECTOR))

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=url)))
    trace.set_tracer_provider(provider)

    logger.info("Tracing %s to %s", service_name, url)


def shutdown_tracing() -> None:
    """Flush buffered spans. A no-op when only the API's proxy provider is installed."""
    provider = trace.get_tracer_provider()
    shutdown = getattr(provider, "shutdown", None)
    if shutdown is None:
        return
    try:
        shutdown()
    except Exception as exc:
        logger.warning("Tracer shutdown failed: %s", exc)
    else:
        logger.info("Tracer shutdown complete")
