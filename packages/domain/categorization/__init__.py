"""
Categorization Module - assign a category (and business) to each transaction

Strategies run in priority order and the first match wins:
1. RuleMatcher (priority 1): user rules, confidence 1.0
2. HistoryMatcher (priority 2): most frequent category for the merchant
3. AiMatcher (priority 100): language model over the user's categories

Feedback loop:
- User recategorizes "STARBUCKS #123" as Coffee Shops with apply_to_future
- A merchant-exact rule is created
- The next Starbucks transaction is matched by the rule, no AI call
"""

from packages.domain.categorization.categorization_service import (
    CategorizationEngine,
    categorization_engine,
)
from packages.domain.categorization.schemas import (
    CategorizationContext,
    CategorizationDecision,
    CategorizationMethod,
    CategorizationResult,
    TransactionToCategorize,
)

__all__ = [
    'CategorizationEngine',
    'categorization_engine',
    'CategorizationContext',
    'CategorizationDecision',
    'CategorizationMethod',
    'CategorizationResult',
    'TransactionToCategorize',
]
