"""
System categories seeded once and shared by every user
"""
from typing import List, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.models import Category
from packages.common.schemas.enums import CategoryType, TransactionType, UsageScope
from packages.domain.categorization.category_repository import normalize_name

logger = structlog.get_logger()

# (name, transaction type, usage scope)
SYSTEM_CATEGORIES: List[Tuple[str, TransactionType, UsageScope]] = [
    # Expenses: everyday
    ("Groceries", TransactionType.EXPENSE, UsageScope.PERSONAL),
    ("Dining Out", TransactionType.EXPENSE, UsageScope.BOTH),
    ("Coffee Shops", TransactionType.EXPENSE, UsageScope.BOTH),
    ("Transportation", TransactionType.EXPENSE, UsageScope.BOTH),
    ("Fuel", TransactionType.EXPENSE, UsageScope.BOTH),
    ("Utilities", TransactionType.EXPENSE, UsageScope.BOTH),
    ("Rent & Mortgage", TransactionType.EXPENSE, UsageScope.BOTH),
    ("Shopping", TransactionType.EXPENSE, UsageScope.PERSONAL),
    ("Entertainment", TransactionType.EXPENSE, UsageScope.PERSONAL),
    ("Health & Medical", TransactionType.EXPENSE, UsageScope.PERSONAL),
    ("Travel", TransactionType.EXPENSE, UsageScope.BOTH),
    ("Subscriptions", TransactionType.EXPENSE, UsageScope.BOTH),
    ("Insurance", TransactionType.EXPENSE, UsageScope.BOTH),
    ("Loan Payments", TransactionType.EXPENSE, UsageScope.BOTH),
    ("Bank Fees", TransactionType.EXPENSE, UsageScope.BOTH),
    # Expenses: business
    ("Office Supplies", TransactionType.EXPENSE, UsageScope.BUSINESS),
    ("Software & Services", TransactionType.EXPENSE, UsageScope.BUSINESS),
    ("Advertising", TransactionType.EXPENSE, UsageScope.BUSINESS),
    ("Professional Fees", TransactionType.EXPENSE, UsageScope.BUSINESS),
    ("Equipment", TransactionType.EXPENSE, UsageScope.BUSINESS),
    # Income
    ("Salary", TransactionType.INCOME, UsageScope.PERSONAL),
    ("Business Revenue", TransactionType.INCOME, UsageScope.BUSINESS),
    ("Interest", TransactionType.INCOME, UsageScope.BOTH),
    ("Refunds", TransactionType.INCOME, UsageScope.BOTH),
    ("Transfers In", TransactionType.INCOME, UsageScope.BOTH),
]


async def seed_system_categories(db: AsyncSession) -> int:
    """
    Insert any missing system categories.

    Idempotent: existing names (per transaction type) are left untouched.

    Args:
        db: Database session

    Returns:
        Number of categories inserted
    """
    result = await db.execute(
        select(Category.normalized_name, Category.transaction_type)
        .where(Category.type == CategoryType.SYSTEM.value)
    )
    existing = {(row.normalized_name, row.transaction_type) for row in result}

    inserted = 0
    for name, transaction_type, usage_scope in SYSTEM_CATEGORIES:
        key = (normalize_name(name), transaction_type.value)
        if key in existing:
            continue
        db.add(Category(
            name=name,
            normalized_name=normalize_name(name),
            type=CategoryType.SYSTEM.value,
            transaction_type=transaction_type.value,
            usage_scope=usage_scope.value,
            user_id=None,
        ))
        inserted += 1

    await db.commit()
    logger.info("system_categories_seeded", inserted=inserted, total=len(SYSTEM_CATEGORIES))
    return inserted
