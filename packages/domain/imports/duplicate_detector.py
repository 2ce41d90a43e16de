"""
Duplicate Detector - keep the same data from being imported twice

Tiers (evaluated in order, current document excluded):
1. exact_image: identical content hash among the user's documents that were
   extracted (confidence 1.0)
2. merchant_date_amount: a receipt with the same merchant (case-insensitive),
   same date and same amount (confidence 0.9)

Duplicates are never deleted; they are flagged is_excluded_from_totals.
"""
import hashlib
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.errors import DuplicateFileError
from packages.common.models import BankTransaction, Document, Receipt
from packages.common.schemas.enums import DocumentStatus, DuplicateMatchType, TransactionSource

logger = structlog.get_logger()

FUZZY_MATCH_CONFIDENCE = 0.9


def compute_content_hash(data: bytes) -> str:
    """SHA-256 of the raw bytes (independent of file name and upload time)"""
    return hashlib.sha256(data).hexdigest()


@dataclass
class DuplicateMatch:
    """Existing document the new one duplicates"""
    document_id: str
    match_type: DuplicateMatchType
    confidence: float


class DuplicateDetector:
    """Document- and transaction-level duplicate checks"""

    async def check_duplicate(
        self,
        db: AsyncSession,
        user_id: str,
        document_id: str,
        content_hash: str,
        merchant_name: Optional[str] = None,
        transaction_date: Optional[date] = None,
        amount: Optional[Decimal] = None,
    ) -> Optional[DuplicateMatch]:
        """
        Look for an earlier copy of a freshly imported document.

        Args:
            db: Database session
            user_id: Owner
            document_id: The new document (excluded from the search)
            content_hash: SHA-256 of the new file
            merchant_name: Extracted merchant (fuzzy tier)
            transaction_date: Extracted date (fuzzy tier)
            amount: Extracted total (fuzzy tier)

        Returns:
            DuplicateMatch or None
        """
        result = await db.execute(
            select(Document.id)
            .where(
                Document.user_id == user_id,
                Document.content_hash == content_hash,
                Document.id != document_id,
                Document.status != DocumentStatus.FAILED.value,
            )
            .order_by(Document.is_excluded_from_totals, Document.created_at)
            .limit(1)
        )
        exact = result.scalar_one_or_none()
        if exact is not None:
            logger.info("duplicate_exact_image", document_id=document_id, duplicate_of=exact)
            return DuplicateMatch(document_id=exact, match_type=DuplicateMatchType.EXACT_IMAGE, confidence=1.0)

        if merchant_name and merchant_name.strip() and transaction_date is not None and amount is not None:
            result = await db.execute(
                select(Receipt.document_id)
                .where(
                    Receipt.user_id == user_id,
                    Receipt.document_id.is_not(None),
                    Receipt.document_id != document_id,
                    Receipt.is_excluded_from_totals.is_(False),
                    func.lower(func.trim(Receipt.merchant_name)) == merchant_name.strip().lower(),
                    Receipt.transaction_date == transaction_date,
                    Receipt.total_amount == amount,
                )
                .order_by(Receipt.created_at)
                .limit(1)
            )
            fuzzy = result.scalar_one_or_none()
            if fuzzy is not None:
                logger.info("duplicate_merchant_date_amount", document_id=document_id, duplicate_of=fuzzy)
                return DuplicateMatch(
                    document_id=fuzzy,
                    match_type=DuplicateMatchType.MERCHANT_DATE_AMOUNT,
                    confidence=FUZZY_MATCH_CONFIDENCE,
                )

        return None

    async def mark_document_excluded(self, db: AsyncSession, document_id: str) -> None:
        """Keep the duplicate for audit but drop it (and its records) from totals"""
        for model, column in (
            (Document, Document.id),
            (Receipt, Receipt.document_id),
            (BankTransaction, BankTransaction.document_id),
        ):
            await db.execute(
                update(model)
                .where(column == document_id)
                .values(is_excluded_from_totals=True)
                .execution_options(synchronize_session=False)
            )
        await db.commit()

    async def assert_not_imported(self, db: AsyncSession, user_id: str, content_hash: str) -> None:
        """
        Reject an upload whose bytes the user already imported.

        Raises:
            DuplicateFileError: With the existing document id
        """
        result = await db.execute(
            select(Document.id)
            .where(
                Document.user_id == user_id,
                Document.content_hash == content_hash,
                Document.is_excluded_from_totals.is_(False),
                Document.status != DocumentStatus.FAILED.value,
            )
            .limit(1)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            raise DuplicateFileError("File already imported", existing_document_id=existing)

    async def statement_line_exists(
        self,
        db: AsyncSession,
        user_id: str,
        transaction_date: date,
        amount: Decimal,
        merchant_name: Optional[str],
        exclude_document_id: Optional[str] = None,
    ) -> bool:
        """
        Same date, amount and merchant already stored for this user

        Rows of exclude_document_id are ignored so a statement listing the
        same charge twice keeps both lines.
        """
        query = select(func.count()).select_from(BankTransaction).where(
            BankTransaction.user_id == user_id,
            BankTransaction.transaction_date == transaction_date,
            BankTransaction.amount == amount,
            BankTransaction.is_excluded_from_totals.is_(False),
        )
        if exclude_document_id:
            query = query.where(or_(
                BankTransaction.document_id.is_(None),
                BankTransaction.document_id != exclude_document_id,
            ))
        if merchant_name:
            query = query.where(func.lower(func.trim(BankTransaction.merchant_name)) == merchant_name.strip().lower())
        else:
            query = query.where(BankTransaction.merchant_name.is_(None))
        return bool(await db.scalar(query))

    async def bank_link_transaction_exists(self, db: AsyncSession, user_id: str, external_id: str) -> bool:
        count = await db.scalar(
            select(func.count()).select_from(BankTransaction).where(
                BankTransaction.user_id == user_id,
                BankTransaction.source == TransactionSource.BANK_LINK.value,
                BankTransaction.external_id == external_id,
            )
        )
        return bool(count)


# Singleton instance
duplicate_detector = DuplicateDetector()
