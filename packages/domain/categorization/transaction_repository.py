"""
Transaction repository - categorized receipts and bank transactions

Provides the history rows the HistoryMatcher learns from and the manual
recategorization path used by the review UI.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.errors import AuthorizationError, ValidationError
from packages.common.identity import require_user_id
from packages.common.models import BankTransaction, Category, Receipt
from packages.common.schemas.enums import CategoryType, TransactionType
from packages.domain.categorization.businesses import business_service
from packages.domain.categorization.category_repository import category_repository

logger = structlog.get_logger()


class RecordKind(str, Enum):
    """Which table a categorized record lives in"""
    RECEIPT = "receipt"
    BANK_TRANSACTION = "bank_transaction"


@dataclass
class HistoryRow:
    """One past categorization of a merchant"""
    category_id: str
    category_name: str
    business_id: Optional[str]
    created_at: datetime


class TransactionRepository:
    """Read/write access to categorized records"""

    async def merchant_history(
        self,
        db: AsyncSession,
        user_id: str,
        merchant_name: str,
        since: datetime,
        transaction_type: Optional[TransactionType] = None,
    ) -> List[HistoryRow]:
        """
        Past categorizations of a merchant (case-insensitive exact name).

        Records excluded from totals (duplicates) are ignored, as are rows whose
        category the user can no longer use.

        Args:
            db: Database session
            user_id: Owner
            merchant_name: Merchant to look up
            since: Only rows created at or after this instant
            transaction_type: Only categories of this type

        Returns:
            Matching rows across receipts and bank transactions, newest first
        """
        normalized = merchant_name.strip().lower()
        if not normalized:
            return []

        rows: List[HistoryRow] = []
        for model in (Receipt, BankTransaction):
            query = (
                select(model.category_id, Category.name, model.business_id, model.created_at)
                .join(Category, Category.id == model.category_id)
                .where(
                    model.user_id == user_id,
                    model.category_id.is_not(None),
                    model.is_excluded_from_totals.is_(False),
                    func.lower(func.trim(model.merchant_name)) == normalized,
                    model.created_at >= since,
                    or_(Category.type == CategoryType.SYSTEM.value, Category.user_id == user_id),
                )
            )
            if transaction_type is not None:
                query = query.where(Category.transaction_type == TransactionType(transaction_type).value)

            result = await db.execute(query)
            rows.extend(
                HistoryRow(
                    category_id=row.category_id,
                    category_name=row.name,
                    business_id=row.business_id,
                    created_at=row.created_at,
                )
                for row in result.all()
            )

        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows

    async def get_owned_record(
        self,
        db: AsyncSession,
        user_id: str,
        kind: RecordKind,
        record_id: str,
    ) -> Union[Receipt, BankTransaction]:
        user_id = require_user_id(user_id)
        model = Receipt if RecordKind(kind) == RecordKind.RECEIPT else BankTransaction
        record = await db.get(model, record_id)
        if record is None or record.user_id != user_id:
            raise AuthorizationError("Transaction not found or unauthorized")
        return record

    async def update_category(
        self,
        db: AsyncSession,
        user_id: str,
        kind: RecordKind,
        record_id: str,
        category_id: str,
        business_id: Optional[str] = None,
    ) -> Union[Receipt, BankTransaction]:
        """
        Manually assign a category (and optional business) to a stored record.

        Raises:
            AuthorizationError: Record, category or business not owned/usable
            ValidationError: Category direction does not match the record
        """
        record = await self.get_owned_record(db, user_id, kind, record_id)
        category = await category_repository.get_usable_category(db, user_id, category_id)
        if business_id:
            await business_service.get_owned_business(db, user_id, business_id)

        if isinstance(record, BankTransaction) and category.transaction_type != record.transaction_type:
            raise ValidationError(
                f"Category '{category.name}' is for {category.transaction_type} transactions"
            )

        record.category_id = category.id
        record.business_id = business_id
        if isinstance(record, Receipt):
            record.is_business_expense = business_id is not None

        await db.commit()

        logger.info("transaction_recategorized",
                    kind=RecordKind(kind).value,
                    record_id=record_id,
                    category_id=category.id,
                    business_id=business_id)
        return record


# Singleton instance
transaction_repository = TransactionRepository()
