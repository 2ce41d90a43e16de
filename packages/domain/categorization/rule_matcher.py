"""
Rule Matcher - deterministic user rules

Rules are evaluated in insertion order and the first match wins; there is
no explicit priority field. Matching is case-insensitive for every match
type. A malformed regex is a non-match, never an exception.
"""
import re
from typing import Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.models import CategoryRule
from packages.common.schemas.enums import RuleField, RuleMatchType
from packages.domain.categorization.category_repository import category_repository
from packages.domain.categorization.schemas import (
    CategorizationContext,
    CategorizationMethod,
    CategorizationResult,
    TransactionToCategorize,
)

logger = structlog.get_logger()


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _match_exact(pattern: str, value: str) -> bool:
    return _normalize(value) == _normalize(pattern)


def _match_contains(pattern: str, value: str) -> bool:
    needle = _normalize(pattern)
    return bool(needle) and needle in _normalize(value)


def _match_regex(pattern: str, value: str) -> bool:
    try:
        compiled = re.compile(pattern, re.IGNORECASE)
    except re.error:
        logger.warning("rule_regex_invalid", pattern=pattern)
        return False
    return compiled.search(value or "") is not None


_MATCHERS: Dict[RuleMatchType, Callable[[str, str], bool]] = {
    RuleMatchType.EXACT: _match_exact,
    RuleMatchType.CONTAINS: _match_contains,
    RuleMatchType.REGEX: _match_regex,
}


def rule_matches(match_type: RuleMatchType, pattern: str, value: Optional[str]) -> bool:
    """
    Apply one rule pattern to one field value.

    Args:
        match_type: exact, contains or regex
        pattern: Rule pattern
        value: Transaction field value (None never matches)

    Returns:
        True if the pattern matches
    """
    if value is None:
        return False
    return _MATCHERS[RuleMatchType(match_type)](pattern, value)


def _field_value(rule: CategoryRule, transaction: TransactionToCategorize) -> Optional[str]:
    field = RuleField(rule.field)
    if field == RuleField.MERCHANT_NAME:
        return transaction.merchant_name
    return transaction.description


class RuleMatcher:
    """Priority 1: user-defined rules"""

    name = "rule"
    priority = 1

    async def categorize(
        self,
        transaction: TransactionToCategorize,
        context: CategorizationContext,
        db: AsyncSession,
    ) -> CategorizationResult:
        rules = await category_repository.list_rules(db, context.user_id, enabled_only=True)

        for rule, category in rules:
            try:
                match_type = RuleMatchType(rule.match_type)
                field_value = _field_value(rule, transaction)
            except ValueError:
                logger.warning("rule_unknown_type", rule_id=rule.id, match_type=rule.match_type, field=rule.field)
                continue

            if rule_matches(match_type, rule.value, field_value):
                logger.info("rule_matched",
                            rule_id=rule.id,
                            category_id=category.id,
                            match_type=match_type.value)
                return CategorizationResult(
                    category_id=category.id,
                    category_name=category.name,
                    confidence=1.0,
                    method=CategorizationMethod.RULE,
                    matched_rule_id=rule.id,
                    business_id=rule.business_id,
                    is_business_expense=True if rule.business_id else None,
                )

        return CategorizationResult.none()


rule_matcher = RuleMatcher()
