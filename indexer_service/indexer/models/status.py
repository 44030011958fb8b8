from typing import Optional

from pydantic import BaseModel


class StreamCheckpoint(BaseModel):
    stream_key: str
    slot: int
    updated_at: str


class IngestionStatusResponse(BaseModel):
    """Read-only view of ingestion progress."""

    running: bool
    stream_key: Optional[str] = None
    state: Optional[str] = None
    next_slot: Optional[int] = None
    last_error: Optional[str] = None
    checkpoints: list[StreamCheckpoint]
    truncated_slots: int
