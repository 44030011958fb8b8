"""Span capture and registry cleanup for the observability tests."""

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import REGISTRY


def setup_test_tracing(service_name: str = "slot-indexer-test") -> InMemorySpanExporter:
    """
    Route all spans into a fresh ``InMemorySpanExporter`` and return it.

    The OTel API only lets the global provider be set once per process, so
    the guard is cleared first; every test's ``setUp`` may call this.
    """
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))

    trace._TRACER_PROVIDER = None
    trace._TRACER_PROVIDER_SET_ONCE._done = False
    trace.set_tracer_provider(provider)
    return exporter


def get_spans_by_name(exporter: InMemorySpanExporter, name: str) -> list[ReadableSpan]:
    return [span for span in exporter.get_finished_spans() if span.name == name]


def reset_metrics() -> None:
    """
    Drop every application collector from the default registry.

    The process, platform and gc collectors carry no ``_name`` and stay.
    """
    collectors = {id(c): c for c in REGISTRY._names_to_collectors.values() if hasattr(c, "_name")}
    for collector in collectors.values():
        try:
            REGISTRY.unregister(collector)
        except KeyError:
            pass
