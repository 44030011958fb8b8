"""
Per-stream ingestion checkpoint.

A checkpoint is the highest slot whose transactions are fully stored. It
lives in the ``checkpoints`` table, one row per stream key, and is written in
a single SQLite transaction so a crash leaves either the old or the new
value.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional

from indexer.database import get_connection
from indexer.errors import CheckpointRegressionError, PersistenceFailure

logger = logging.getLogger("checkpoint")


class CheckpointStore:
    """Load and advance the checkpoint of one ingestion stream.

    Args:
        stream_key: Key owned by exactly one running ingestion loop.
        start_slot: First slot to ingest when no checkpoint exists.
        db_path: SQLite file; defaults to ``indexer.database.DB_PATH``.
    """

    def __init__(self, stream_key: str, start_slot: int = 0, db_path: Path | None = None):
        self.stream_key = stream_key
        self.start_slot = start_slot
        self.db_path = db_path

    def load(self) -> int:
        """Return the last fully stored slot.

        A stream that has never saved returns ``start_slot - 1`` so that its
        first target is ``start_slot`` itself.
        """
        stored = self.stored_slot()
        if stored is None:
            return self.start_slot - 1
        return stored

    def stored_slot(self) -> Optional[int]:
        try:
            with get_connection(self.db_path) as conn:
                row = conn.execute(
                    "SELECT slot FROM checkpoints WHERE stream_key = ?",
                    (self.stream_key,),
                ).fetchone()
        except sqlite3.Error as error:
            raise PersistenceFailure(
                f"Failed to read checkpoint for stream '{self.stream_key}': {error}"
            ) from error
        return row["slot"] if row else None

    def save(self, slot: int) -> None:
        """Persist ``slot`` as the new checkpoint.

        The read of the current value and the write happen under one write
        lock, so the monotonic check cannot race another writer.

        Raises:
            CheckpointRegressionError: If ``slot`` is below the stored value.
            PersistenceFailure: If the write fails.
        """
        try:
            with get_connection(self.db_path) as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT slot FROM checkpoints WHERE stream_key = ?",
                    (self.stream_key,),
                ).fetchone()
                if row is not None and slot < row["slot"]:
                    conn.rollback()
                    raise CheckpointRegressionError(self.stream_key, row["slot"], slot)
                self._write(conn, slot)
        except sqlite3.Error as error:
            raise PersistenceFailure(
                f"Failed to save checkpoint {slot} for stream '{self.stream_key}': {error}"
            ) from error

    def reset(self, slot: Optional[int] = None) -> None:
        """Operator reset: set the checkpoint to ``slot`` (or clear it).

        This is the only way to move a checkpoint backwards. With no slot the
        row is deleted and the stream restarts from ``start_slot``.
        """
        try:
            with get_connection(self.db_path) as conn:
                if slot is None:
                    conn.execute("DELETE FROM checkpoints WHERE stream_key = ?", (self.stream_key,))
                else:
                    self._write(conn, slot)
        except sqlite3.Error as error:
            raise PersistenceFailure(
                f"Failed to reset checkpoint for stream '{self.stream_key}': {error}"
            ) from error
        logger.warning(
            "Checkpoint for stream '%s' reset to %s",
            self.stream_key,
            "start slot" if slot is None else slot,
        )

    def _write(self, conn, slot: int) -> None:
        conn.execute(
            """
            INSERT INTO checkpoints (stream_key, slot, updated_at)
            VALUES (?, ?, datetime('now'))
            ON CONFLICT(stream_key) DO UPDATE SET
                slot = excluded.slot,
                updated_at = excluded.updated_at
            """,
            (self.stream_key, slot),
        )


def list_checkpoints(db_path: Path | None = None) -> list[dict]:
    """All stream checkpoints, for the status endpoint and the CLI."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT stream_key, slot, updated_at FROM checkpoints ORDER BY stream_key"
        ).fetchall()
    return [dict(row) for row in rows]
