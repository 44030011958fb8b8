import sqlite3

from fastapi import APIRouter, Response

from indexer.database import check_connection, get_storage_summary
from indexer.models.queries import HealthResponse
from indexer_common.observability import metrics_response

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
def health():
    """Storage reachability plus how far ingestion has got."""
    if not check_connection():
        return HealthResponse(status="unhealthy", db_connected=False)
    try:
        summary = get_storage_summary()
    except sqlite3.Error:
        # file opens but the schema is missing or corrupt
        return HealthResponse(status="degraded", db_connected=True)
    return HealthResponse(status="healthy", db_connected=True, **summary)


@router.get("/metrics")
def metrics():
    body, content_type = metrics_response()
    return Response(content=body, media_type=content_type)
