from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from indexer.records import TransactionRecord


class TransactionResponse(BaseModel):
    signature: str
    slot: int
    block_hash: str
    block_time: Optional[int] = Field(description="Unix seconds reported by the node")
    timestamp: Optional[datetime] = None
    tx_index: int = Field(description="Position of the transaction within its block")
    data: dict[str, Any] = Field(description="Raw transaction object as returned by getBlock")

    @classmethod
    def from_record(cls, record: TransactionRecord) -> "TransactionResponse":
        return cls(
            signature=record.signature,
            slot=record.slot,
            block_hash=record.block_hash,
            block_time=record.block_time,
            timestamp=record.timestamp,
            tx_index=record.tx_index,
            data=record.payload,
        )


class DayResponse(BaseModel):
    day: date
    count: int
    transactions: list[TransactionResponse]


class HealthResponse(BaseModel):
    status: str
    db_connected: bool
    total_records: int = 0
    latest_checkpoint: Optional[int] = None
    truncated_slots: int = 0
