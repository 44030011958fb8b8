"""
Checkpointed slot ingestion loop.

Walks slots in strictly increasing order, one at a time::

    IDLE -> FETCHING(slot) -> PERSISTING(slot, batch) -> ADVANCING(slot) -> IDLE
                 \\________________\\____________________\\______-> ERROR(slot, kind)

The checkpoint is saved only after a slot's batch has committed. A crash
between the two re-fetches the slot on restart, and the signature-keyed
upsert turns that replay into a no-op, so the stored set always matches an
uninterrupted run.

Exactly one loop may own a stream key at a time. Parallel streams need
distinct keys (and usually distinct START_SLOT / END_SLOT ranges).
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from opentelemetry import trace
from opentelemetry.trace import SpanKind

from indexer import telemetry
from indexer.checkpoint import CheckpointStore
from indexer.config import IngestSettings
from indexer.errors import (
    CheckpointRegressionError,
    ErrorKind,
    IngestionHalted,
    PersistenceFailure,
)
from indexer.fetch_client import (
    FatalError,
    FetchResult,
    RateLimited,
    RpcError,
    SlotSkipped,
    SolanaRpcClient,
    Transactions,
    TransientError,
    classify_error,
)
from indexer.pacing import Pacer, backoff_delay
from indexer.records import TransactionRecord
from indexer.repository import TransactionRepository

logger = logging.getLogger("ingestion")

SERVICE_NAME = "slot-indexer"


class LoopState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    ADVANCING = "advancing"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SlotReport:
    """What happened to one slot whose checkpoint advanced."""

    slot: int
    outcome: str  # stored | empty | skipped
    stored: int = 0
    available: int = 0

    @property
    def truncated(self) -> bool:
        return self.available > self.stored


def deduplicate(records: list[TransactionRecord]) -> list[TransactionRecord]:
    """Drop repeated signatures, keeping the first occurrence in block order."""
    seen: set[str] = set()
    unique = []
    for record in records:
        if record.signature in seen:
            continue
        seen.add(record.signature)
        unique.append(record)
    return unique


class IngestionLoop:
    """Single-stream ingestion state machine.

    Args:
        client: Fetch client (``fetch(slot)`` and ``get_tip_slot()``).
        checkpoint: Checkpoint store owned by this stream.
        repository: Transaction repository.
        settings: Retry, pacing and range settings.
        stop_event: Set to request a graceful stop. The in-flight
            persist/advance step always completes first.
    """

    def __init__(
        self,
        client,
        checkpoint: CheckpointStore,
        repository: TransactionRepository,
        settings: IngestSettings,
        stop_event: Optional[threading.Event] = None,
    ):
        self.client = client
        self.checkpoint = checkpoint
        self.repository = repository
        self.settings = settings
        self.stop_event = stop_event or threading.Event()
        self.pacer = Pacer(settings.min_fetch_interval, wait=self._sleep)

        self.state = LoopState.IDLE
        self.next_slot: Optional[int] = None
        self.last_error: Optional[str] = None
        self._tip: Optional[int] = None

    @property
    def stream_key(self) -> str:
        return self.checkpoint.stream_key

    def stop(self) -> None:
        self.stop_event.set()

    def status(self) -> dict:
        return {
            "stream_key": self.stream_key,
            "state": self.state.value,
            "next_slot": self.next_slot,
            "last_error": self.last_error,
        }

    # ── main loop ────────────────────────────────────────────────

    def run(self) -> None:
        """Ingest until stopped or past ``end_slot``.

        Raises:
            IngestionHalted: When a slot cannot be fetched, stored or
                checkpointed. The checkpoint stays at the previous slot.
        """
        self.next_slot = self.checkpoint.load() + 1
        logger.info(
            "Ingestion stream '%s' starting at slot %d (tx_limit=%d, end_slot=%s)",
            self.stream_key,
            self.next_slot,
            self.settings.tx_limit,
            self.settings.end_slot,
        )
        try:
            while not self.stop_event.is_set():
                slot = self.next_slot
                if self.settings.end_slot is not None and slot > self.settings.end_slot:
                    logger.info(
                        "Stream '%s' reached end slot %d", self.stream_key, self.settings.end_slot
                    )
                    break
                if not self._tip_allows(slot):
                    continue
                if self.process_slot(slot) is None:
                    break
                self.next_slot = slot + 1
        finally:
            if self.state != LoopState.ERROR:
                self.state = LoopState.STOPPED
            logger.info("Ingestion stream '%s' stopped (next slot %s)", self.stream_key, self.next_slot)

    def process_slot(self, slot: int) -> Optional[SlotReport]:
        """Fetch, persist and checkpoint one slot.

        Returns ``None`` when a stop request interrupted the slot before its
        data was stored; the checkpoint is untouched in that case.
        """
        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(
            "ingest slot",
            kind=SpanKind.INTERNAL,
            attributes={"ingest.stream": self.stream_key, "ingest.slot": slot},
        ) as span:
            result = self._fetch(slot)
            if result is None:
                return None

            if isinstance(result, SlotSkipped):
                logger.info("Slot %d skipped: %s", slot, result.reason or "no block")
                report = SlotReport(slot=slot, outcome="skipped")
            else:
                stored = self._persist(slot, result)
                if stored is None:
                    return None
                report = SlotReport(
                    slot=slot,
                    outcome="stored" if stored else "empty",
                    stored=stored,
                    available=result.available,
                )

            self._advance(slot)
            telemetry.SLOTS_PROCESSED.labels(outcome=report.outcome).inc()
            span.set_attribute("ingest.outcome", report.outcome)
            span.set_attribute("ingest.stored", report.stored)
            self.state = LoopState.IDLE
            return report

    # ── states ───────────────────────────────────────────────────

    def _fetch(self, slot: int) -> Optional[FetchResult]:
        """FETCHING: returns Transactions / SlotSkipped, or None on stop."""
        attempt = 0
        while True:
            attempt += 1
            self.state = LoopState.FETCHING
            self.pacer.pace()
            if self.stop_event.is_set():
                return None

            started = time.monotonic()
            result = self.client.fetch(slot)
            telemetry.FETCH_DURATION.observe(time.monotonic() - started)
            telemetry.FETCH_ATTEMPTS.labels(result=_result_label(result)).inc()

            if isinstance(result, (Transactions, SlotSkipped)):
                return result
            if isinstance(result, FatalError):
                self._halt(slot, ErrorKind.FATAL, result.reason)

            if attempt >= self.settings.fetch_max_attempts:
                if isinstance(result, RateLimited):
                    self._cool_down(slot, attempt, result)
                    attempt = 0
                    continue
                self._halt(slot, ErrorKind.RETRY_EXHAUSTED, _reason(result))

            retry_after = result.retry_after if isinstance(result, RateLimited) else None
            delay = backoff_delay(
                attempt,
                self.settings.backoff_base_seconds,
                self.settings.backoff_max_seconds,
                retry_after,
            )
            logger.warning(
                "Fetch of slot %d failed (attempt %d/%d): %s; retrying in %.2fs",
                slot,
                attempt,
                self.settings.fetch_max_attempts,
                _reason(result),
                delay,
            )
            self._sleep(delay)

    def _persist(self, slot: int, result: Transactions) -> Optional[int]:
        """PERSISTING: write the whole batch or nothing; returns the stored count."""
        records = deduplicate(result.records)
        if len(records) != len(result.records):
            logger.warning(
                "Slot %d returned %d duplicate signatures",
                slot,
                len(result.records) - len(records),
            )
        truncation = (slot, result.available) if result.truncated else None

        attempt = 0
        while True:
            attempt += 1
            self.state = LoopState.PERSISTING
            started = time.monotonic()
            try:
                self.repository.upsert_batch(records, truncation=truncation)
            except PersistenceFailure as error:
                telemetry.PERSIST_FAILURES.inc()
                if attempt >= self.settings.persist_max_attempts:
                    self._halt(slot, ErrorKind.PERSIST_FAILED, str(error))
                if self.stop_event.is_set():
                    # the failed write rolled back, so the slot is simply not stored
                    return None
                delay = backoff_delay(
                    attempt, self.settings.backoff_base_seconds, self.settings.backoff_max_seconds
                )
                logger.warning(
                    "Persisting slot %d failed (attempt %d/%d): %s; retrying in %.2fs",
                    slot,
                    attempt,
                    self.settings.persist_max_attempts,
                    error,
                    delay,
                )
                self._sleep(delay)
                continue
            break

        telemetry.PERSIST_DURATION.observe(time.monotonic() - started)
        telemetry.TRANSACTIONS_STORED.inc(len(records))
        if truncation is not None:
            dropped = result.available - len(result.records)
            telemetry.TRUNCATED_SLOTS.inc()
            telemetry.TRANSACTIONS_DROPPED.inc(dropped)
            logger.warning(
                "Slot %d truncated: stored %d of %d transactions (TX_LIMIT=%d)",
                slot,
                len(records),
                result.available,
                self.settings.tx_limit,
                extra={"slot": slot, "stream_key": self.stream_key, "dropped": dropped},
            )
        logger.debug("Stored %d transactions for slot %d", len(records), slot)
        return len(records)

    def _advance(self, slot: int) -> None:
        """ADVANCING: persist the checkpoint; the slot counts as done only afterwards."""
        attempt = 0
        while True:
            attempt += 1
            self.state = LoopState.ADVANCING
            try:
                self.checkpoint.save(slot)
                break
            except CheckpointRegressionError as error:
                self._halt(slot, ErrorKind.CHECKPOINT_FAILED, str(error))
            except PersistenceFailure as error:
                if attempt >= self.settings.persist_max_attempts:
                    self._halt(slot, ErrorKind.CHECKPOINT_FAILED, str(error))
                logger.warning("Checkpoint save for slot %d failed: %s", slot, error)
                self._sleep(
                    backoff_delay(attempt, self.settings.backoff_base_seconds, self.settings.backoff_max_seconds)
                )

        telemetry.CHECKPOINT_SLOT.labels(stream=self.stream_key).set(slot)
        if self._tip is not None:
            telemetry.TIP_LAG_SLOTS.labels(stream=self.stream_key).set(max(self._tip - slot, 0))

    def _tip_allows(self, slot: int) -> bool:
        """Whether ``slot`` is at or below the usable chain tip; waits if not."""
        if self._tip is not None and slot <= self._tip:
            return True

        self.pacer.pace()
        try:
            self._tip = self.client.get_tip_slot()
        except RpcError as error:
            result = classify_error(error)
            if isinstance(result, FatalError):
                self._halt(slot, ErrorKind.FATAL, f"tip lookup failed: {result.reason}")
            logger.warning("Tip lookup failed: %s", error)
            self._sleep(self.settings.tip_poll_interval_seconds)
            return False

        telemetry.TIP_LAG_SLOTS.labels(stream=self.stream_key).set(max(self._tip - slot + 1, 0))
        if slot <= self._tip:
            return True
        logger.debug("Slot %d is ahead of tip %d; waiting", slot, self._tip)
        self._sleep(self.settings.tip_poll_interval_seconds)
        return False

    # ── error state ──────────────────────────────────────────────

    def _cool_down(self, slot: int, attempts: int, result: RateLimited) -> None:
        """Rate-limit retries ran out: report, sleep, then fetch the same slot again."""
        self.state = LoopState.ERROR
        self.last_error = f"slot {slot}: rate limited after {attempts} attempts"
        telemetry.INGESTION_ERRORS.labels(kind=ErrorKind.RETRY_EXHAUSTED.value).inc()
        cooldown = max(self.settings.rate_limit_cooldown_seconds, result.retry_after or 0.0)
        logger.critical(
            "Slot %d still rate limited after %d attempts; cooling down for %.1fs",
            slot,
            attempts,
            cooldown,
            extra={
                "alert": True,
                "service": SERVICE_NAME,
                "stream_key": self.stream_key,
                "slot": slot,
                "error_kind": ErrorKind.RETRY_EXHAUSTED.value,
            },
        )
        self._sleep(cooldown)

    def _halt(self, slot: int, kind: ErrorKind, detail: str) -> None:
        self.state = LoopState.ERROR
        self.last_error = f"slot {slot}: {kind.value}: {detail}"
        telemetry.INGESTION_ERRORS.labels(kind=kind.value).inc()
        logger.critical(
            "Ingestion stream '%s' halted at slot %d (%s): %s",
            self.stream_key,
            slot,
            kind.value,
            detail,
            extra={
                "alert": True,
                "service": SERVICE_NAME,
                "stream_key": self.stream_key,
                "slot": slot,
                "error_kind": kind.value,
                "detail": detail,
            },
        )
        raise IngestionHalted(slot, kind, detail)

    def _sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.stop_event.wait(seconds)


def _result_label(result: FetchResult) -> str:
    return {
        Transactions: "transactions",
        SlotSkipped: "skipped",
        RateLimited: "rate_limited",
        TransientError: "transient_error",
        FatalError: "fatal_error",
    }.get(type(result), "unknown")


def _reason(result: FetchResult) -> str:
    return getattr(result, "reason", "") or type(result).__name__


# ── wiring ───────────────────────────────────────────────────────


def build_loop(
    settings: IngestSettings,
    stop_event: Optional[threading.Event] = None,
    db_path: Optional[Path] = None,
) -> IngestionLoop:
    """Assemble a loop from settings with the real RPC client.

    ``db_path`` of ``None`` means ``indexer.database.DB_PATH``.
    """
    client = SolanaRpcClient(
        settings.rpc_url,
        tx_limit=settings.tx_limit,
        root_lag=settings.root_lag,
        timeout=settings.rpc_timeout_seconds,
    )
    return IngestionLoop(
        client=client,
        checkpoint=CheckpointStore(settings.stream_key, settings.start_slot, db_path),
        repository=TransactionRepository(db_path),
        settings=settings,
        stop_event=stop_event,
    )


def _run_in_background(loop: IngestionLoop) -> None:
    try:
        loop.run()
    except IngestionHalted:
        # already reported as a CRITICAL alert; the API keeps serving reads
        pass
    except Exception:
        loop.state = LoopState.ERROR
        logger.exception("Ingestion stream '%s' crashed", loop.stream_key)
    finally:
        close = getattr(loop.client, "close", None)
        if close:
            close()


def start_ingestion(loop: IngestionLoop) -> threading.Thread:
    """Run ``loop`` in a daemon thread (used by the API process)."""
    thread = threading.Thread(
        target=_run_in_background,
        args=(loop,),
        name=f"ingestion-{loop.stream_key}",
        daemon=True,
    )
    thread.start()
    logger.info("Ingestion thread started for stream '%s'", loop.stream_key)
    return thread
