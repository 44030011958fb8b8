"""
JSON log output for the indexer processes.

Every line carries ``timestamp``, ``level``, ``logger`` and ``message``; the
OTel logging instrumentation adds ``otelTraceID`` / ``otelSpanID`` so a
line can be joined with the RPC or SQLite span that produced it.

Records logged at CRITICAL with ``alert=True`` in ``extra`` are also
forwarded to ``ALERT_WEBHOOK_URL`` when that variable is set. The
ingestion loop logs a halted stream this way::

    logger.critical(
        "stream halted",
        extra={"alert": True, "stream_key": "main", "slot": 1234,
               "error_kind": "fatal"},
    )
"""

import logging
import os
import threading
from datetime import datetime, timezone

import requests
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from pythonjsonlogger.json import JsonFormatter


LOG_FORMAT = "%(timestamp)s %(level)s %(name)s %(message)s"

# Record attributes copied into an alert payload, with their defaults.
ALERT_FIELDS = {
    "stream_key": None,
    "slot": None,
    "error_kind": None,
    "detail": "",
}

_configured = False


class JsonTraceFormatter(JsonFormatter):
    """Adds the fixed envelope fields on top of the record's own extras."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.update(
            timestamp=record.created,
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
        )


class WebhookAlertHandler(logging.Handler):
    """
    Forwards alert-tagged CRITICAL records to an HTTP endpoint.

    The POST happens on a daemon thread; delivery failures are logged at
    DEBUG on the ``webhook`` logger and otherwise dropped.
    """

    def __init__(self, webhook_url: str, service: str = "unknown", timeout: float = 5):
        super().__init__(level=logging.CRITICAL)
        self.webhook_url = webhook_url
        self.service = service
        self.timeout = timeout

    def emit(self, record: logging.LogRecord) -> None:
        if record.levelno < logging.CRITICAL or not getattr(record, "alert", False):
            return
        try:
            threading.Thread(
                target=self._send,
                args=(self._build_payload(record),),
                daemon=True,
            ).start()
        except Exception:
            self.handleError(record)

    def _build_payload(self, record: logging.LogRecord) -> dict:
        payload = {
            "severity": record.levelname,
            "message": record.getMessage(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "logger": record.name,
            "service": getattr(record, "service", self.service),
            "trace_id": getattr(record, "otelTraceID", ""),
            "span_id": getattr(record, "otelSpanID", ""),
        }
        for field, default in ALERT_FIELDS.items():
            payload[field] = getattr(record, field, default)
        return payload

    def _send(self, payload: dict) -> None:
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            # a WARNING here would come straight back through this handler chain
            logging.getLogger("webhook").debug("Alert delivery failed: %s", exc)


def setup_logging(level: int = logging.INFO, service: str = "unknown") -> None:
    """
    Install the JSON stream handler (and the alert webhook, if configured)
    on the root logger. Only the first call in a process does anything.
    """
    global _configured
    if _configured:
        return
    _configured = True

    LoggingInstrumentor().instrument(set_logging_format=False)

    root = logging.getLogger()
    root.setLevel(level)

    stream = logging.StreamHandler()
    stream.setFormatter(JsonTraceFormatter(LOG_FORMAT))
    root.addHandler(stream)

    webhook_url = os.environ.get("ALERT_WEBHOOK_URL")
    if webhook_url:
        root.addHandler(WebhookAlertHandler(webhook_url, service=service))
        logging.getLogger("observability").info("Alert webhook enabled for %s", service)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
