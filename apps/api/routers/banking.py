"""
Banking API Router
Receives transaction pages synced from a bank-link provider
"""
from typing import List

import structlog
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.dependencies import get_current_user_id
from packages.common.database import get_db_session
from packages.domain.banking.bank_link import (
    BankLinkIngestResult,
    NormalizedBankTransaction,
    bank_link_ingestor,
)

logger = structlog.get_logger()
router = APIRouter()


class BankLinkSyncRequest(BaseModel):
    transactions: List[NormalizedBankTransaction] = Field(..., max_length=1000)


@router.post("/bank-link/transactions", response_model=BankLinkIngestResult, status_code=status.HTTP_201_CREATED)
async def ingest_bank_link_transactions(
    request: BankLinkSyncRequest,
    use_ai: bool = Query(True, description="Use AI for transactions no rule or history matches"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """
    Store and categorize bank-link transactions

    Already-ingested external ids are skipped, so re-sending a page is safe.
    """
    logger.info("bank_link_sync_received", count=len(request.transactions))
    return await bank_link_ingestor.ingest(db, user_id, request.transactions, use_ai=use_ai)
