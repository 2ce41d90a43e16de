"""
History Matcher - learn from the user's own past decisions

Policy: among the user's categorized records for the same merchant
(case-insensitive exact name) created in the lookback window (90 days by
default), pick the most frequent category. Confidence is that category's
share of the matching records. Ties go to the category used most recently.
The business is the most frequent business among the winning rows.
"""
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.config import get_settings
from packages.domain.categorization.schemas import (
    CategorizationContext,
    CategorizationMethod,
    CategorizationResult,
    TransactionToCategorize,
)
from packages.domain.categorization.transaction_repository import (
    HistoryRow,
    transaction_repository,
)

logger = structlog.get_logger()


def pick_most_frequent(rows: List[HistoryRow]) -> Optional[CategorizationResult]:
    """
    Apply the frequency policy to history rows.

    Args:
        rows: History rows (any order)

    Returns:
        Result with method=history, or None when rows is empty
    """
    if not rows:
        return None

    counts = Counter(r.category_id for r in rows)
    last_seen: Dict[str, datetime] = {}
    for r in rows:
        if r.category_id not in last_seen or r.created_at > last_seen[r.category_id]:
            last_seen[r.category_id] = r.created_at

    winner = max(counts, key=lambda cid: (counts[cid], last_seen[cid], cid))
    winning_rows = [r for r in rows if r.category_id == winner]

    business_counts = Counter(r.business_id for r in winning_rows)
    business_last_seen: Dict[Optional[str], datetime] = {}
    for r in winning_rows:
        if r.business_id not in business_last_seen or r.created_at > business_last_seen[r.business_id]:
            business_last_seen[r.business_id] = r.created_at
    business_id = max(
        business_counts,
        key=lambda bid: (business_counts[bid], business_last_seen[bid], bid or ""),
    )

    return CategorizationResult(
        category_id=winner,
        category_name=winning_rows[0].category_name,
        confidence=round(counts[winner] / len(rows), 4),
        method=CategorizationMethod.HISTORY,
        business_id=business_id,
        is_business_expense=True if business_id else None,
    )


class HistoryMatcher:
    """Priority 2: same merchant, same user, recent history"""

    name = "history"
    priority = 2

    def __init__(
        self,
        lookback_days: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.lookback_days = lookback_days
        self.clock = clock

    async def categorize(
        self,
        transaction: TransactionToCategorize,
        context: CategorizationContext,
        db: AsyncSession,
    ) -> CategorizationResult:
        if not transaction.merchant_name or not transaction.merchant_name.strip():
            return CategorizationResult.none()

        lookback = self.lookback_days or get_settings().history_lookback_days
        since = self.clock() - timedelta(days=lookback)

        rows = await transaction_repository.merchant_history(
            db,
            context.user_id,
            transaction.merchant_name,
            since=since,
            transaction_type=transaction.transaction_type,
        )
        result = pick_most_frequent(rows)
        if result is None:
            return CategorizationResult.none()

        logger.info("history_matched",
                    merchant=transaction.merchant_name,
                    category_id=result.category_id,
                    confidence=result.confidence,
                    sample_size=len(rows))
        return result


history_matcher = HistoryMatcher()
