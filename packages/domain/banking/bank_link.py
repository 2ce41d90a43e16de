"""
Bank-link ingestion

Bank-link providers deliver already-structured transactions; no extraction
is needed. Amounts follow our convention: negative = money out (expense),
positive = money in (income). Provider ids are kept as external_id so a
re-sync never stores the same transaction twice.
"""
import re
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.identity import require_user_id
from packages.common.models import BankTransaction
from packages.common.schemas.enums import TransactionSource, TransactionType
from packages.domain.categorization.categorization_service import (
    CategorizationEngine,
    categorization_engine,
)
from packages.domain.categorization.schemas import CategorizationContext, TransactionToCategorize
from packages.domain.imports.duplicate_detector import DuplicateDetector, duplicate_detector

logger = structlog.get_logger()

_REFERENCE_SUFFIX = re.compile(r"\s*[*#]\s*\d+$")
_TRAILING_DIGITS = re.compile(r"\s+\d{4,}$")
_DASH_STATE = re.compile(r"\s*-\s*[A-Z]{2}\s*$", re.IGNORECASE)
_TRAILING_STATE = re.compile(r"\s+[A-Z]{2}\s*$", re.IGNORECASE)
_PAREN_LOCATION = re.compile(r"\s*\([^)]+\)\s*$")


def clean_merchant_name(name: Optional[str]) -> Optional[str]:
    """
    Tidy a raw bank descriptor into a merchant name.

    "STARBUCKS STORE #1234" -> "Starbucks Store"
    "UBER   * 8812 - CA"    -> "Uber"
    """
    if not name or not name.strip():
        return None

    cleaned = " ".join(name.split())
    cleaned = _REFERENCE_SUFFIX.sub("", cleaned)
    cleaned = _TRAILING_DIGITS.sub("", cleaned).strip()
    cleaned = _DASH_STATE.sub("", cleaned)
    cleaned = _PAREN_LOCATION.sub("", cleaned)
    cleaned = _REFERENCE_SUFFIX.sub("", cleaned)
    # Keep a one-word name even if it looks like a state code
    if " " in cleaned:
        cleaned = _TRAILING_STATE.sub("", cleaned)
    cleaned = cleaned.strip()
    if not cleaned:
        return None

    return " ".join(
        word[:1].upper() + word[1:].lower() if len(word) > 2 else word.upper()
        for word in cleaned.split(" ")
    )


class NormalizedBankTransaction(BaseModel):
    """One transaction as handed over by the bank-link provider"""
    external_id: str = Field(..., min_length=1, max_length=255)
    transaction_date: date
    description: str = ""
    merchant_name: Optional[str] = None
    amount: Decimal
    currency: Optional[str] = Field(None, max_length=3)


class BankLinkIngestResult(BaseModel):
    imported: int = 0
    skipped_duplicates: int = 0
    uncategorized: int = 0
    transaction_ids: List[str] = Field(default_factory=list)


class BankLinkIngestor:
    """Stores and categorizes bank-link transactions"""

    def __init__(
        self,
        engine: Optional[CategorizationEngine] = None,
        detector: Optional[DuplicateDetector] = None,
    ):
        self.engine = engine or categorization_engine
        self.detector = detector or duplicate_detector

    async def ingest(
        self,
        db: AsyncSession,
        user_id: str,
        transactions: List[NormalizedBankTransaction],
        use_ai: bool = True,
    ) -> BankLinkIngestResult:
        """
        Ingest a sync page of transactions.

        Args:
            db: Database session
            user_id: Owner
            transactions: Provider transactions (signed amounts)
            use_ai: Run the AI strategy for unmatched transactions

        Returns:
            BankLinkIngestResult with counts and new transaction ids
        """
        user_id = require_user_id(user_id)
        result = BankLinkIngestResult()
        contexts: Dict[TransactionType, CategorizationContext] = {}
        seen = set()

        for tx in transactions:
            if tx.external_id in seen or await self.detector.bank_link_transaction_exists(db, user_id, tx.external_id):
                result.skipped_duplicates += 1
                continue
            seen.add(tx.external_id)

            transaction_type = TransactionType.INCOME if tx.amount > 0 else TransactionType.EXPENSE
            if transaction_type not in contexts:
                contexts[transaction_type] = await self.engine.build_context(db, user_id, transaction_type)
            context = contexts[transaction_type]

            merchant = clean_merchant_name(tx.merchant_name or tx.description)
            candidate = TransactionToCategorize(
                merchant_name=merchant,
                description=tx.description,
                amount=abs(tx.amount),
                transaction_date=tx.transaction_date,
                transaction_type=transaction_type,
                currency=tx.currency,
            )
            if use_ai:
                categorization = await self.engine.categorize_with_ai(candidate, context, db)
            else:
                categorization = await self.engine.categorize_without_ai(candidate, context, db)

            if not categorization.category_id:
                result.uncategorized += 1

            record = BankTransaction(
                user_id=user_id,
                source=TransactionSource.BANK_LINK.value,
                external_id=tx.external_id,
                merchant_name=merchant,
                description=tx.description,
                amount=tx.amount,
                transaction_date=tx.transaction_date,
                currency=(tx.currency or context.user_preferences.currency),
                transaction_type=transaction_type.value,
                category_id=categorization.category_id,
                business_id=categorization.business_id,
            )
            db.add(record)
            await db.commit()

            result.imported += 1
            result.transaction_ids.append(record.id)

        logger.info("bank_link_ingested",
                    user_id=user_id,
                    imported=result.imported,
                    skipped_duplicates=result.skipped_duplicates,
                    uncategorized=result.uncategorized)
        return result


# Singleton instance
bank_link_ingestor = BankLinkIngestor()
