"""
Categorization Engine - Orchestrates layered transaction categorization

Flow (strict priority, first non-"none" result wins):
1. RuleMatcher: user rules (deterministic intent)
2. HistoryMatcher: how this merchant was categorized before
3. AiMatcher: language model over the available categories

Strategy failures fall through to the next strategy; exhausting all of them
yields method="none" (leave uncategorized for review), which is not an error.

Side effects:
- AI-proposed new categories are created (insert-or-fetch, race safe)
- Manual decisions with "apply to future" create merchant-exact rules
The engine never writes transaction records itself.
"""
from typing import List, Optional, Sequence, Tuple, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.errors import describe_error
from packages.common.identity import require_user_id
from packages.common.metrics import categorization_decisions
from packages.common.models import BankTransaction, CategoryRule, Receipt, UserSettings
from packages.common.schemas.enums import (
    BusinessType,
    CategoryType,
    RuleField,
    RuleMatchType,
    TransactionType,
    UsageScope,
)
from packages.domain.categorization.ai_matcher import ai_matcher
from packages.domain.categorization.businesses import business_service
from packages.domain.categorization.category_repository import category_repository
from packages.domain.categorization.history_matcher import history_matcher
from packages.domain.categorization.rule_matcher import rule_matcher
from packages.domain.categorization.schemas import (
    BusinessOption,
    CategorizationContext,
    CategorizationDecision,
    CategorizationMethod,
    CategorizationResult,
    CategoryOption,
    TransactionToCategorize,
    UserPreferences,
)
from packages.domain.categorization.strategy import CategorizationStrategy
from packages.domain.categorization.transaction_repository import (
    RecordKind,
    transaction_repository,
)

logger = structlog.get_logger()


class CategorizationEngine:
    """
    Runs categorization strategies in priority order.

    Usage:
        engine = CategorizationEngine()
        context = await engine.build_context(db, user_id)
        result = await engine.categorize_with_ai(
            TransactionToCategorize(merchant_name="STARBUCKS #123", amount=Decimal("4.50")),
            context,
            db,
        )
        print(f"{result.method.value}: {result.category_name} ({result.confidence:.0%})")
    """

    def __init__(self, strategies: Optional[Sequence[CategorizationStrategy]] = None):
        """
        Initialize engine.

        Args:
            strategies: Strategy list (sorted by priority); defaults to rule, history, ai
        """
        chosen = list(strategies) if strategies is not None else [rule_matcher, history_matcher, ai_matcher]
        self.strategies: List[CategorizationStrategy] = sorted(chosen, key=lambda s: s.priority)

    async def build_context(
        self,
        db: AsyncSession,
        user_id: str,
        transaction_type: TransactionType = TransactionType.EXPENSE,
        statement_type: Optional[str] = None,
    ) -> CategorizationContext:
        """
        Load preferences, usable categories and businesses for a user.

        Args:
            db: Database session
            user_id: Owner
            transaction_type: Direction used to filter categories
            statement_type: Optional statement hint (checking, credit_card, ...)

        Returns:
            CategorizationContext ready for categorize_with_ai
        """
        user_id = require_user_id(user_id)

        settings_row = await db.get(UserSettings, user_id)
        preferences = UserPreferences()
        if settings_row is not None:
            preferences = UserPreferences(
                usage_type=UsageScope(settings_row.usage_type),
                country=settings_row.country,
                currency=settings_row.currency,
            )

        categories = await category_repository.list_available_categories(
            db, user_id, transaction_type=transaction_type, usage_type=preferences.usage_type
        )
        businesses = await business_service.list_businesses(db, user_id)

        return CategorizationContext(
            user_id=user_id,
            available_categories=[
                CategoryOption(
                    id=c.id,
                    name=c.name,
                    transaction_type=TransactionType(c.transaction_type),
                    usage_scope=UsageScope(c.usage_scope) if c.usage_scope else None,
                    is_system=c.type == CategoryType.SYSTEM.value,
                )
                for c in categories
            ],
            user_preferences=preferences,
            user_businesses=[
                BusinessOption(id=b.id, name=b.name, type=BusinessType(b.type)) for b in businesses
            ],
            statement_type=statement_type,
            transaction_type=transaction_type,
        )

    async def categorize_with_ai(
        self,
        transaction: TransactionToCategorize,
        context: CategorizationContext,
        db: AsyncSession,
    ) -> CategorizationResult:
        """Run every strategy (rule -> history -> ai)"""
        return await self._run(transaction, context, db, self.strategies)

    async def categorize_without_ai(
        self,
        transaction: TransactionToCategorize,
        context: CategorizationContext,
        db: AsyncSession,
    ) -> CategorizationResult:
        """Run deterministic strategies only (rule -> history)"""
        strategies = [s for s in self.strategies if s.name != CategorizationMethod.AI.value]
        return await self._run(transaction, context, db, strategies)

    async def _run(
        self,
        transaction: TransactionToCategorize,
        context: CategorizationContext,
        db: AsyncSession,
        strategies: Sequence[CategorizationStrategy],
    ) -> CategorizationResult:
        require_user_id(context.user_id)

        logger.info("categorization_started",
                    user_id=context.user_id,
                    merchant=transaction.merchant_name,
                    strategies=[s.name for s in strategies])

        for strategy in strategies:
            try:
                result = await strategy.categorize(transaction, context, db)
                if not result.is_match:
                    continue
                result = await self._finalize(result, transaction, context, db)
            except Exception as e:
                logger.warning("categorization_strategy_failed",
                               strategy=strategy.name,
                               merchant=transaction.merchant_name,
                               error=describe_error(e))
                continue

            categorization_decisions.labels(method=result.method.value).inc()
            logger.info("categorization_complete",
                        method=result.method.value,
                        category_id=result.category_id,
                        category_name=result.category_name,
                        confidence=result.confidence,
                        business_id=result.business_id)
            return result

        categorization_decisions.labels(method=CategorizationMethod.NONE.value).inc()
        logger.info("categorization_unmatched", merchant=transaction.merchant_name)
        return CategorizationResult.none()

    async def _finalize(
        self,
        result: CategorizationResult,
        transaction: TransactionToCategorize,
        context: CategorizationContext,
        db: AsyncSession,
    ) -> CategorizationResult:
        """Create proposed categories and drop unresolvable businesses"""
        if result.is_new_category and not result.category_id:
            category = await category_repository.get_or_create_category(
                db,
                context.user_id,
                result.suggested_category or result.category_name or "",
                transaction_type=context.transaction_type or transaction.transaction_type,
            )
            result.category_id = category.id
            result.category_name = category.name

        if result.business_id:
            business = await business_service.resolve_business(db, context.user_id, result.business_id)
            if business is None:
                # Deleted business: attribute to personal
                result.business_id = None
                result.business_name = None
                result.is_business_expense = False
            else:
                result.business_name = business.name

        return result

    async def learn_from_decision(
        self,
        db: AsyncSession,
        user_id: str,
        merchant_name: Optional[str],
        category_id: str,
        business_id: Optional[str] = None,
        apply_to_future: bool = True,
    ) -> Optional[CategoryRule]:
        """
        Feedback loop: turn a manual decision into a merchant-exact rule.

        Skipped when apply_to_future is off, the merchant is blank, or a
        merchant rule for the same name already exists.

        Returns:
            The new rule, or None when nothing was created
        """
        user_id = require_user_id(user_id)
        if not apply_to_future or not merchant_name or not merchant_name.strip():
            return None

        existing = await category_repository.find_merchant_rule(db, user_id, merchant_name)
        if existing is not None:
            logger.info("merchant_rule_exists", rule_id=existing.id, merchant=merchant_name)
            return None

        return await category_repository.create_rule(
            db,
            user_id,
            category_id=category_id,
            value=merchant_name.strip(),
            field=RuleField.MERCHANT_NAME,
            match_type=RuleMatchType.EXACT,
            display_name=merchant_name.strip(),
            business_id=business_id,
        )

    async def recategorize(
        self,
        db: AsyncSession,
        user_id: str,
        kind: RecordKind,
        record_id: str,
        decision: CategorizationDecision,
    ) -> Tuple[Union[Receipt, BankTransaction], Optional[CategoryRule]]:
        """
        Apply a user's manual categorization and optionally learn a rule.

        Returns:
            (updated record, created rule or None)
        """
        record = await transaction_repository.update_category(
            db, user_id, kind, record_id, decision.category_id, decision.business_id
        )
        rule = await self.learn_from_decision(
            db,
            user_id,
            record.merchant_name,
            decision.category_id,
            business_id=decision.business_id,
            apply_to_future=decision.apply_to_future,
        )
        return record, rule


# Singleton instance
categorization_engine = CategorizationEngine()
