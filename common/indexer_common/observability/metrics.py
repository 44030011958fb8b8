"""
Prometheus metric factories.

Registration is idempotent: asking for a name that is already registered
returns the existing collector, so ``indexer.telemetry`` can be imported by
both the API process and the CLI worker (and reloaded by tests) without
``Duplicated timeseries`` errors.
"""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)


def _registered(metric_cls, name, documentation, **kwargs):
    try:
        return metric_cls(name, documentation, **kwargs)
    except ValueError:
        # the registry indexes every collector under its base name as well
        # as its suffixed sample names (_total, _bucket, _info, ...)
        existing = REGISTRY._names_to_collectors.get(name)
        if not isinstance(existing, metric_cls):
            raise
        return existing


def _label_kwargs(labelnames) -> dict:
    return {"labelnames": list(labelnames)} if labelnames else {}


def create_counter(name: str, documentation: str, labelnames: list[str] = None) -> Counter:
    return _registered(Counter, name, documentation, **_label_kwargs(labelnames))


def create_gauge(name: str, documentation: str, labelnames: list[str] = None) -> Gauge:
    return _registered(Gauge, name, documentation, **_label_kwargs(labelnames))


def create_histogram(
    name: str,
    documentation: str,
    buckets: list[float] = None,
    labelnames: list[str] = None,
) -> Histogram:
    kwargs = _label_kwargs(labelnames)
    if buckets:
        kwargs["buckets"] = buckets
    return _registered(Histogram, name, documentation, **kwargs)


def create_info(name: str, documentation: str) -> Info:
    return _registered(Info, name, documentation)


def create_service_info(service_name: str, version: str, environment: str | None = None) -> Info:
    """
    Publish ``<service_name>_info{version, environment}``.

    ``environment`` falls back to ``$ENVIRONMENT`` and then ``"development"``.
    """
    info = create_info(service_name, "Service metadata")
    info.info({
        "version": version,
        "environment": environment or os.environ.get("ENVIRONMENT", "development"),
    })
    return info


def metrics_response() -> tuple[bytes, str]:
    """Exposition body and content type for ``GET /metrics``."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
