"""
Read-only transaction queries.

  GET /transactions?day=YYYY-MM-DD   all transactions of a UTC day, by slot
  GET /transactions?id=<signature>   one transaction, or 404

Exactly one of ``day`` and ``id`` must be given.
"""

import logging
from datetime import date
from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query

from indexer.errors import PersistenceFailure
from indexer.models.queries import DayResponse, TransactionResponse
from indexer.repository import TransactionRepository

logger = logging.getLogger("queries")

router = APIRouter(tags=["Queries"])


def get_repository() -> TransactionRepository:
    return TransactionRepository()


@router.get("/transactions", response_model=Union[DayResponse, TransactionResponse])
def query_transactions(
    day: Optional[date] = Query(default=None, description="UTC calendar day, YYYY-MM-DD"),
    id: Optional[str] = Query(default=None, min_length=1, description="Transaction signature"),
    repository: TransactionRepository = Depends(get_repository),
):
    if (day is None) == (id is None):
        raise HTTPException(status_code=400, detail="Provide exactly one of 'day' or 'id'")

    try:
        if id is not None:
            record = repository.find_by_id(id)
            if record is None:
                raise HTTPException(status_code=404, detail="Transaction not found")
            return TransactionResponse.from_record(record)

        records = repository.find_by_day(day)
    except PersistenceFailure:
        logger.exception("Transaction query failed")
        raise HTTPException(status_code=503, detail="Storage unavailable")

    return DayResponse(
        day=day,
        count=len(records),
        transactions=[TransactionResponse.from_record(r) for r in records],
    )
