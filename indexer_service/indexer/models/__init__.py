from .queries import TransactionResponse, DayResponse, HealthResponse
from .status import StreamCheckpoint, IngestionStatusResponse

__all__ = [
    "TransactionResponse",
    "DayResponse",
    "HealthResponse",
    "StreamCheckpoint",
    "IngestionStatusResponse",
]
