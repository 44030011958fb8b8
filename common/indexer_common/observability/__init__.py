"""
Logging, metrics and tracing shared by the indexer API process and the
``slot-indexer run`` worker.

Both entry points start with::

    init_observability("slot-indexer", __version__)

which installs JSON logging (plus the alert webhook when
``ALERT_WEBHOOK_URL`` is set), OTLP tracing when
``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, and the ``<service>_info`` metric.
"""

import logging as _logging
import os as _os

from .logging import JsonTraceFormatter, WebhookAlertHandler, get_logger, setup_logging
from .metrics import (
    create_counter,
    create_gauge,
    create_histogram,
    create_info,
    create_service_info,
    metrics_response,
)
from .middleware import MetricsMiddleware
from .testing import get_spans_by_name, reset_metrics, setup_test_tracing
from .tracing import init_tracing, shutdown_tracing


def init_observability(
    service_name: str,
    version: str,
    *,
    log_level: int = _logging.INFO,
    environment: str | None = None,
) -> None:
    setup_logging(log_level, service=service_name)
    logger = get_logger(service_name)

    if not _os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT"):
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT unset; spans stay in-process")
    else:
        try:
            init_tracing(service_name)
        except Exception as exc:
            # the indexer keeps running without an exporter
            logger.warning("Tracing unavailable: %s", exc)

    create_service_info(service_name.replace("-", "_"), version, environment)
    logger.info("%s %s starting", service_name, version)


__all__ = [
    "init_observability",
    "setup_logging",
    "get_logger",
    "JsonTraceFormatter",
    "WebhookAlertHandler",
    "create_counter",
    "create_gauge",
    "create_histogram",
    "create_info",
    "create_service_info",
    "metrics_response",
    "init_tracing",
    "shutdown_tracing",
    "MetricsMiddleware",
    "setup_test_tracing",
    "get_spans_by_name",
    "reset_metrics",
]
