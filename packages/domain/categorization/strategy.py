"""
Categorization strategy interface

Strategies are evaluated by the engine in ascending priority:
rule (1) -> history (2) -> ai (100).
"""
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from packages.domain.categorization.schemas import (
    CategorizationContext,
    CategorizationResult,
    TransactionToCategorize,
)


class CategorizationStrategy(Protocol):
    """Contract shared by RuleMatcher, HistoryMatcher and AiMatcher"""

    name: str
    priority: int

    async def categorize(
        self,
        transaction: TransactionToCategorize,
        context: CategorizationContext,
        db: AsyncSession,
    ) -> CategorizationResult:
        """
        Decide a category or return CategorizationResult.none().

        Raises:
            Exception: Any failure; the engine logs it and moves to the next strategy
        """
        ...
