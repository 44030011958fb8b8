"""Exception hierarchy for the slot indexer."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Why the ingestion loop entered its error state."""

    RETRY_EXHAUSTED = "retry_exhausted"
    FATAL = "fatal"
    PERSIST_FAILED = "persist_failed"
    CHECKPOINT_FAILED = "checkpoint_failed"


class IndexerError(Exception):
    """Base class for all indexer errors."""


class ConfigError(IndexerError):
    """Raised when start-up configuration is missing or invalid."""


class PersistenceFailure(IndexerError):
    """Raised when a repository or checkpoint write/read fails."""


class CheckpointRegressionError(IndexerError):
    """Raised when a save would move a checkpoint backwards."""

    def __init__(self, stream_key: str, current: int, requested: int):
        super().__init__(
            f"Checkpoint for stream '{stream_key}' cannot move from {current} "
            f"back to {requested}. Use an explicit reset instead."
        )
        self.stream_key = stream_key
        self.current = current
        self.requested = requested


class IngestionHalted(IndexerError):
    """Raised out of the ingestion loop when a stream stops on an error.

    The checkpoint is left at the last fully stored slot, so restarting the
    stream re-enters at ``slot``.
    """

    def __init__(self, slot: int, kind: ErrorKind, detail: str = ""):
        message = f"Ingestion halted at slot {slot} ({kind.value})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.slot = slot
        self.kind = kind
        self.detail = detail
