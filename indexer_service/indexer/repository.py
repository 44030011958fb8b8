"""
Transaction repository over the SQLite store.

Uniqueness of a transaction is enforced by the ``signature`` primary key and
every write is an ``INSERT ... ON CONFLICT DO UPDATE``, so storing the same
transaction twice leaves exactly one row. This is what makes re-processing a
slot after a crash harmless.
"""

from __future__ import annotations

import sqlite3
from datetime import date
from pathlib import Path
from typing import Iterable, Optional

from opentelemetry import trace
from opentelemetry.trace import SpanKind

from indexer.database import get_connection
from indexer.errors import PersistenceFailure
from indexer.records import TransactionRecord


_UPSERT = """
INSERT INTO transactions (signature, slot, block_hash, block_time, tx_index, day, payload)
VALUES (:signature, :slot, :block_hash, :block_time, :tx_index, :day, :payload)
ON CONFLICT(signature) DO UPDATE SET
    slot = excluded.slot,
    block_hash = excluded.block_hash,
    block_time = excluded.block_time,
    tx_index = excluded.tx_index,
    day = excluded.day,
    payload = excluded.payload
"""

_COLUMNS = "signature, slot, block_hash, block_time, tx_index, payload"

_RECORD_TRUNCATION = """
INSERT INTO slot_truncations (slot, available, stored)
VALUES (?, ?, ?)
ON CONFLICT(slot) DO UPDATE SET
    available = excluded.available,
    stored = excluded.stored,
    recorded_at = datetime('now')
"""


class TransactionRepository:
    """Idempotent, signature-keyed transaction storage.

    Args:
        db_path: SQLite file; defaults to ``indexer.database.DB_PATH``.
    """

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path

    def upsert(self, record: TransactionRecord) -> None:
        self.upsert_batch([record])

    def upsert_batch(
        self,
        records: Iterable[TransactionRecord],
        truncation: Optional[tuple[int, int]] = None,
    ) -> int:
        """Write a slot's records in one transaction: all visible or none.

        Args:
            records: Records to store.
            truncation: ``(slot, available)`` when the slot held more
                transactions than ``records``; the truncation row commits
                together with the records.

        Raises:
            PersistenceFailure: If the write fails; nothing is committed.
        """
        rows = [record.to_row() for record in records]
        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(
            "db upsert_transactions",
            kind=SpanKind.INTERNAL,
            attributes={
                "db.system": "sqlite",
                "db.operation": "UPSERT",
                "db.records_count": len(rows),
            },
        ):
            try:
                with get_connection(self.db_path) as conn:
                    conn.executemany(_UPSERT, rows)
                    if truncation is not None:
                        slot, available = truncation
                        conn.execute(_RECORD_TRUNCATION, (slot, available, len(rows)))
            except sqlite3.Error as error:
                raise PersistenceFailure(f"Failed to upsert {len(rows)} transactions: {error}") from error
        return len(rows)

    def exists(self, signature: str) -> bool:
        row = self._fetch_one("SELECT 1 FROM transactions WHERE signature = ?", (signature,))
        return row is not None

    def find_by_id(self, signature: str) -> Optional[TransactionRecord]:
        """Return the record with this signature, or ``None`` when unknown."""
        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(
            "db query find_by_id",
            kind=SpanKind.INTERNAL,
            attributes={"db.system": "sqlite", "db.operation": "SELECT"},
        ) as span:
            row = self._fetch_one(
                f"SELECT {_COLUMNS} FROM transactions WHERE signature = ?",
                (signature,),
            )
            span.set_attribute("db.result_count", 0 if row is None else 1)
        return TransactionRecord.from_row(row) if row else None

    def find_by_day(self, day: date) -> list[TransactionRecord]:
        """Return the day's records in ascending slot order (block order within a slot)."""
        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(
            "db query find_by_day",
            kind=SpanKind.INTERNAL,
            attributes={
                "db.system": "sqlite",
                "db.operation": "SELECT",
                "db.query.day": day.isoformat(),
            },
        ) as span:
            query = f"""
            SELECT {_COLUMNS}
            FROM transactions
            WHERE day = ?
            ORDER BY slot ASC, tx_index ASC
            """
            rows = self._fetch_all(query, (day.isoformat(),))
            span.set_attribute("db.result_count", len(rows))
        return [TransactionRecord.from_row(row) for row in rows]

    def count(self) -> int:
        return self._fetch_one("SELECT COUNT(*) AS cnt FROM transactions")["cnt"]

    def count_for_slot(self, slot: int) -> int:
        row = self._fetch_one("SELECT COUNT(*) AS cnt FROM transactions WHERE slot = ?", (slot,))
        return row["cnt"]

    # ── truncation log ───────────────────────────────────────────

    def record_truncation(self, slot: int, available: int, stored: int) -> None:
        """Persist that ``slot`` held ``available`` transactions but only ``stored`` were kept."""
        try:
            with get_connection(self.db_path) as conn:
                conn.execute(_RECORD_TRUNCATION, (slot, available, stored))
        except sqlite3.Error as error:
            raise PersistenceFailure(f"Failed to record truncation for slot {slot}: {error}") from error

    def list_truncations(self) -> list[dict]:
        rows = self._fetch_all(
            "SELECT slot, available, stored, recorded_at FROM slot_truncations ORDER BY slot ASC"
        )
        return [dict(row) for row in rows]

    def count_truncations(self) -> int:
        return self._fetch_one("SELECT COUNT(*) AS cnt FROM slot_truncations")["cnt"]

    # ── helpers ──────────────────────────────────────────────────

    def _fetch_one(self, query: str, params: tuple = ()):
        try:
            with get_connection(self.db_path) as conn:
                return conn.execute(query, params).fetchone()
        except sqlite3.Error as error:
            raise PersistenceFailure(f"Query failed: {error}") from error

    def _fetch_all(self, query: str, params: tuple = ()):
        try:
            with get_connection(self.db_path) as conn:
                return conn.execute(query, params).fetchall()
        except sqlite3.Error as error:
            raise PersistenceFailure(f"Query failed: {error}") from error
