import os
import sqlite3
from pathlib import Path
from contextlib import contextmanager

from indexer.config import DEFAULT_DB_PATH

DB_PATH = Path(os.environ.get("DATABASE_PATH", str(DEFAULT_DB_PATH)))

SCHEMA = """
CREATE TABLE IF NOT EXISTS transactions (
    signature TEXT PRIMARY KEY,
    slot INTEGER NOT NULL,
    block_hash TEXT NOT NULL,
    block_time INTEGER,
    tx_index INTEGER NOT NULL,
    day TEXT,
    payload TEXT NOT NULL,
    ingested_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_transactions_day ON transactions(day, slot, tx_index);
CREATE INDEX IF NOT EXISTS idx_transactions_slot ON transactions(slot);

CREATE TABLE IF NOT EXISTS checkpoints (
    stream_key TEXT PRIMARY KEY,
    slot INTEGER NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS slot_truncations (
    slot INTEGER PRIMARY KEY,
    available INTEGER NOT NULL,
    stored INTEGER NOT NULL,
    recorded_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

TABLES = ("transactions", "checkpoints", "slot_truncations")


def _get_db_path() -> Path:
    return DB_PATH


def init_db(db_path: Path | None = None, reset: bool | None = None):
    """Create the schema, optionally dropping existing tables first.

    ``reset`` defaults to the ``DB_RESET_ON_START`` environment variable.
    """
    db_path = Path(db_path) if db_path else _get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if reset is None:
        reset = os.environ.get("DB_RESET_ON_START", "false").lower() == "true"

    with sqlite3.connect(str(db_path)) as conn:
        # readers keep a consistent snapshot while the ingestion thread commits
        conn.execute("PRAGMA journal_mode=WAL")
        if reset:
            for table in TABLES:
                conn.execute(f"DROP TABLE IF EXISTS {table}")
        conn.executescript(SCHEMA)


@contextmanager
def get_connection(db_path: Path | None = None):
    """Yield a connection that commits on success and rolls back on error."""
    conn = sqlite3.connect(str(db_path or _get_db_path()), timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def get_storage_summary(db_path: Path | None = None) -> dict:
    """Stored record count, highest checkpointed slot and truncated slot count."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM transactions) AS total_records,
                (SELECT MAX(slot) FROM checkpoints) AS latest_checkpoint,
                (SELECT COUNT(*) FROM slot_truncations) AS truncated_slots
            """
        ).fetchone()
    return dict(row)


def check_connection(db_path: Path | None = None) -> bool:
    try:
        with get_connection(db_path) as conn:
            conn.execute("SELECT 1")
        return True
    except sqlite3.Error:
        return False
