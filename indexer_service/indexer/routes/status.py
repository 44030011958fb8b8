from fastapi import APIRouter, Request

from indexer.checkpoint import list_checkpoints
from indexer.models.status import IngestionStatusResponse, StreamCheckpoint
from indexer.repository import TransactionRepository

router = APIRouter(prefix="/ingestion", tags=["Ingestion"])


@router.get("/status", response_model=IngestionStatusResponse)
def ingestion_status(request: Request):
    """Checkpoints of every stream plus the in-process loop, if one runs here."""
    loop = getattr(request.app.state, "ingestion_loop", None)
    live = loop.status() if loop is not None else {}
    return IngestionStatusResponse(
        running=loop is not None and live.get("state") not in ("stopped", "error"),
        checkpoints=[StreamCheckpoint(**row) for row in list_checkpoints()],
        truncated_slots=TransactionRepository().count_truncations(),
        **live,
    )
