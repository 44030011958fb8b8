"""Stored transaction envelope."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional


@dataclass(frozen=True)
class TransactionRecord:
    """One transaction as captured from a block.

    ``payload`` is the node's raw transaction object (``transaction``,
    ``meta``, ``version``) and is stored without further decoding.
    """

    signature: str
    slot: int
    block_hash: str
    block_time: Optional[int]
    tx_index: int
    payload: dict[str, Any]

    @property
    def timestamp(self) -> Optional[datetime]:
        if self.block_time is None:
            return None
        return datetime.fromtimestamp(self.block_time, tz=timezone.utc)

    @property
    def day(self) -> Optional[date]:
        """UTC calendar day of the block, the key of the day query."""
        ts = self.timestamp
        return ts.date() if ts else None

    def payload_json(self) -> str:
        return json.dumps(self.payload, sort_keys=True, separators=(",", ":"))

    def to_row(self) -> dict:
        day = self.day
        return {
            "signature": self.signature,
            "slot": self.slot,
            "block_hash": self.block_hash,
            "block_time": self.block_time,
            "tx_index": self.tx_index,
            "day": day.isoformat() if day else None,
            "payload": self.payload_json(),
        }

    @classmethod
    def from_row(cls, row) -> "TransactionRecord":
        return cls(
            signature=row["signature"],
            slot=row["slot"],
            block_hash=row["block_hash"],
            block_time=row["block_time"],
            tx_index=row["tx_index"],
            payload=json.loads(row["payload"]),
        )
