"""
Service telemetry for the slot indexer.

Ingestion and HTTP metrics on top of the shared
``indexer_common.observability`` factories, plus FastAPI instrumentation.
The ingestion loop imports this module directly, so the CLI worker and the
API process publish the same series.
"""

import logging

from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from indexer_common.observability import (
    create_counter,
    create_gauge,
    create_histogram,
    MetricsMiddleware,
)

logger = logging.getLogger("telemetry")

# ── Ingestion ─────────────────────────────────────────────────────

SLOTS_PROCESSED = create_counter(
    "ingest_slots_processed_total",
    "Slots whose checkpoint advanced, by outcome",
    ["outcome"],
)

TRANSACTIONS_STORED = create_counter(
    "ingest_transactions_stored_total",
    "Transaction records upserted into the repository",
)

TRUNCATED_SLOTS = create_counter(
    "ingest_truncated_slots_total",
    "Slots that held more transactions than TX_LIMIT",
)

TRANSACTIONS_DROPPED = create_counter(
    "ingest_transactions_dropped_total",
    "Transactions left out of truncated slots",
)

FETCH_ATTEMPTS = create_counter(
    "ingest_fetch_attempts_total",
    "RPC fetch attempts by result",
    ["result"],
)

PERSIST_FAILURES = create_counter(
    "ingest_persist_failures_total",
    "Failed slot batch writes (each is retried)",
)

INGESTION_ERRORS = create_counter(
    "ingest_errors_total",
    "Times the ingestion loop entered its error state, by kind",
    ["kind"],
)

CHECKPOINT_SLOT = create_gauge(
    "ingest_checkpoint_slot",
    "Last fully stored slot per stream",
    ["stream"],
)

TIP_LAG_SLOTS = create_gauge(
    "ingest_tip_lag_slots",
    "Distance between the usable chain tip and the checkpoint",
    ["stream"],
)

FETCH_DURATION = create_histogram(
    "ingest_fetch_duration_seconds",
    "Time spent in one getBlock fetch",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

PERSIST_DURATION = create_histogram(
    "ingest_persist_duration_seconds",
    "Time spent writing one slot batch to SQLite",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

# ── HTTP ──────────────────────────────────────────────────────────

HTTP_REQUESTS = create_counter(
    "http_requests_total",
    "Total HTTP requests by method and path",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION = create_histogram(
    "http_request_duration_seconds",
    "Query API latency by route",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
    labelnames=["method", "path"],
)


def init(app):
    """Wire HTTP metrics and OpenTelemetry auto-instrumentation into the app."""
    app.add_middleware(
        MetricsMiddleware,
        counter=HTTP_REQUESTS,
        duration=HTTP_REQUEST_DURATION,
        ignored_paths={"/metrics"},
    )

    try:
        FastAPIInstrumentor.instrument_app(app)
        logger.info("FastAPI instrumentation enabled")
    except Exception as e:
        logger.warning("FastAPI instrumentation failed: %s", e)

    logger.info("Service telemetry initialised")
