"""
Category & rule repository

Categories are visible to a user when they are system categories or owned by
that user. New-category creation is insert-or-fetch on the unique
(user_id, type, normalized_name) key so concurrent jobs proposing the same
name converge on one row.
"""
import re
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.errors import AuthorizationError, ValidationError
from packages.common.identity import require_user_id
from packages.common.models import (
    BankTransaction,
    Category,
    CategoryRule,
    Receipt,
    new_id,
    utcnow,
)
from packages.common.schemas.enums import (
    CategoryType,
    RuleField,
    RuleMatchType,
    TransactionType,
    UsageScope,
)
from packages.domain.categorization.businesses import business_service

logger = structlog.get_logger()


def normalize_name(name: Optional[str]) -> str:
    """Lower-case, whitespace-collapsed key used for name comparisons"""
    return " ".join((name or "").split()).lower()


def _insert_for(db: AsyncSession):
    """Dialect-specific insert supporting ON CONFLICT DO NOTHING"""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Unsupported database dialect for insert-or-fetch: {dialect}")


def _visible_to(user_id: str):
    return or_(Category.type == CategoryType.SYSTEM.value, Category.user_id == user_id)


def _scope_filter(usage_type: Optional[UsageScope]):
    """Personal users see personal/both/unscoped; business users see business/both/unscoped"""
    if usage_type is None or usage_type == UsageScope.BOTH:
        return None
    allowed = [UsageScope(usage_type).value, UsageScope.BOTH.value]
    return or_(Category.usage_scope.is_(None), Category.usage_scope.in_(allowed))


class CategoryRepository:
    """Database access for categories and category rules"""

    # ---- Categories ---------------------------------------------------------------------

    async def list_available_categories(
        self,
        db: AsyncSession,
        user_id: str,
        transaction_type: Optional[TransactionType] = None,
        usage_type: Optional[UsageScope] = None,
    ) -> List[Category]:
        """
        Categories the user may assign.

        Args:
            db: Database session
            user_id: Owner
            transaction_type: Restrict to income or expense categories
            usage_type: User's usage type (filters by category usage scope)

        Returns:
            Categories ordered system-first, then by name
        """
        user_id = require_user_id(user_id)
        query = select(Category).where(_visible_to(user_id))

        if transaction_type is not None:
            query = query.where(Category.transaction_type == TransactionType(transaction_type).value)

        scope = _scope_filter(usage_type)
        if scope is not None:
            query = query.where(scope)

        query = query.order_by(Category.type, Category.name)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def get_usable_category(self, db: AsyncSession, user_id: str, category_id: str) -> Category:
        """
        Load a category the user may assign.

        Raises:
            AuthorizationError: If the category is missing or owned by another user
        """
        user_id = require_user_id(user_id)
        category = await db.get(Category, category_id)
        if category is None:
            raise AuthorizationError("Category not found or unauthorized")
        if category.type != CategoryType.SYSTEM.value and category.user_id != user_id:
            raise AuthorizationError("Category not found or unauthorized")
        return category

    async def find_usable_by_name(
        self,
        db: AsyncSession,
        user_id: str,
        name: str,
        transaction_type: Optional[TransactionType] = None,
    ) -> Optional[Category]:
        """Case-insensitive name lookup among the user's usable categories (own wins over system)"""
        query = select(Category).where(
            _visible_to(user_id),
            Category.normalized_name == normalize_name(name),
        )
        if transaction_type is not None:
            query = query.where(Category.transaction_type == TransactionType(transaction_type).value)

        result = await db.execute(query)
        matches = list(result.scalars().all())
        if not matches:
            return None
        owned = [c for c in matches if c.user_id == user_id]
        return owned[0] if owned else matches[0]

    async def get_or_create_category(
        self,
        db: AsyncSession,
        user_id: str,
        name: str,
        transaction_type: TransactionType = TransactionType.EXPENSE,
        usage_scope: Optional[UsageScope] = None,
    ) -> Category:
        """
        Insert-or-fetch a user category by name.

        Safe under concurrent callers: the insert is ON CONFLICT DO NOTHING on
        the unique (user_id, type, transaction_type, normalized_name) key,
        followed by a re-select, so every caller gets the same row. An income
        and an expense category may share a name.

        Args:
            db: Database session (committed by this call)
            user_id: Owner
            name: Display name proposed for the category
            transaction_type: Income or expense
            usage_scope: Optional scope for the new category

        Returns:
            Existing or newly created category
        """
        user_id = require_user_id(user_id)
        display_name = " ".join((name or "").split())
        normalized = normalize_name(display_name)
        if not normalized:
            raise ValidationError("Category name is required")

        existing = await self.find_usable_by_name(db, user_id, display_name, transaction_type)
        if existing is not None:
            return existing

        candidate_id = new_id()
        insert = _insert_for(db)
        stmt = insert(Category).values(
            id=candidate_id,
            name=display_name,
            normalized_name=normalized,
            type=CategoryType.USER.value,
            transaction_type=TransactionType(transaction_type).value,
            usage_scope=UsageScope(usage_scope).value if usage_scope else None,
            user_id=user_id,
            created_at=utcnow(),
        ).on_conflict_do_nothing(index_elements=["user_id", "type", "transaction_type", "normalized_name"])

        await db.execute(stmt)
        await db.commit()

        result = await db.execute(
            select(Category).where(
                Category.user_id == user_id,
                Category.type == CategoryType.USER.value,
                Category.transaction_type == TransactionType(transaction_type).value,
                Category.normalized_name == normalized,
            )
        )
        category = result.scalar_one()

        if category.id == candidate_id:
            logger.info("category_created", category_id=category.id, name=display_name, user_id=user_id)
        else:
            logger.info("category_create_race_resolved",
                        category_id=category.id,
                        name=display_name,
                        user_id=user_id)
        return category

    async def create_category(
        self,
        db: AsyncSession,
        user_id: str,
        name: str,
        transaction_type: TransactionType = TransactionType.EXPENSE,
        usage_scope: Optional[UsageScope] = None,
        parent_id: Optional[str] = None,
    ) -> Category:
        """Explicit user-created category; rejects names the user can already see"""
        user_id = require_user_id(user_id)
        if not normalize_name(name):
            raise ValidationError("Category name is required")
        if await self.find_usable_by_name(db, user_id, name, transaction_type) is not None:
            raise ValidationError(f"Category '{name.strip()}' already exists")
        if parent_id:
            await self.get_usable_category(db, user_id, parent_id)

        category = await self.get_or_create_category(db, user_id, name, transaction_type, usage_scope)
        if parent_id and category.parent_id != parent_id:
            category.parent_id = parent_id
            await db.commit()
        return category

    async def rename_category(self, db: AsyncSession, user_id: str, category_id: str, name: str) -> Category:
        """Change the display name of a user category (the only mutable field once referenced)"""
        category = await self._get_owned_category(db, user_id, category_id)
        display_name = " ".join((name or "").split())
        if not display_name:
            raise ValidationError("Category name is required")

        clash = await self.find_usable_by_name(db, user_id, display_name, TransactionType(category.transaction_type))
        if clash is not None and clash.id != category.id:
            raise ValidationError(f"Category '{display_name}' already exists")

        category.name = display_name
        category.normalized_name = normalize_name(display_name)
        await db.commit()
        return category

    async def delete_category(self, db: AsyncSession, user_id: str, category_id: str) -> None:
        """
        Delete a user category and its rules.

        Raises:
            AuthorizationError: System category or someone else's category
            ValidationError: Category is referenced by receipts or transactions
        """
        category = await self._get_owned_category(db, user_id, category_id)

        receipt_refs = await db.scalar(
            select(func.count()).select_from(Receipt).where(Receipt.category_id == category_id)
        )
        transaction_refs = await db.scalar(
            select(func.count()).select_from(BankTransaction).where(BankTransaction.category_id == category_id)
        )
        if (receipt_refs or 0) + (transaction_refs or 0) > 0:
            raise ValidationError("Category is used by existing transactions and cannot be deleted")

        await db.execute(delete(CategoryRule).where(CategoryRule.category_id == category_id))
        await db.delete(category)
        await db.commit()
        logger.info("category_deleted", category_id=category_id, user_id=user_id)

    async def _get_owned_category(self, db: AsyncSession, user_id: str, category_id: str) -> Category:
        user_id = require_user_id(user_id)
        category = await db.get(Category, category_id)
        if category is None or category.type != CategoryType.USER.value or category.user_id != user_id:
            raise AuthorizationError("Category not found or unauthorized")
        return category

    # ---- Rules --------------------------------------------------------------------------

    async def list_rules(
        self,
        db: AsyncSession,
        user_id: str,
        enabled_only: bool = False,
    ) -> List[Tuple[CategoryRule, Category]]:
        """
        User's rules in insertion order, each with its target category.

        Rules whose category is no longer usable are dropped.
        """
        user_id = require_user_id(user_id)
        query = (
            select(CategoryRule, Category)
            .join(Category, Category.id == CategoryRule.category_id)
            .where(CategoryRule.user_id == user_id, _visible_to(user_id))
            .order_by(CategoryRule.sequence, CategoryRule.created_at)
        )
        if enabled_only:
            query = query.where(CategoryRule.is_enabled.is_(True))

        result = await db.execute(query)
        return [(row[0], row[1]) for row in result.all()]

    async def create_rule(
        self,
        db: AsyncSession,
        user_id: str,
        category_id: str,
        value: str,
        field: RuleField = RuleField.MERCHANT_NAME,
        match_type: RuleMatchType = RuleMatchType.CONTAINS,
        display_name: Optional[str] = None,
        business_id: Optional[str] = None,
    ) -> CategoryRule:
        """
        Create a rule pointing at a category the user may use.

        Raises:
            ValidationError: Blank pattern or malformed regex
            AuthorizationError: Category or business not usable by the user
        """
        user_id = require_user_id(user_id)
        field = RuleField(field)
        match_type = RuleMatchType(match_type)

        value = (value or "").strip()
        if not value:
            raise ValidationError("Rule pattern is required")
        if match_type == RuleMatchType.REGEX:
            try:
                re.compile(value)
            except re.error as e:
                raise ValidationError(f"Invalid regular expression: {e}")

        await self.get_usable_category(db, user_id, category_id)
        if business_id:
            await business_service.get_owned_business(db, user_id, business_id)

        last_sequence = await db.scalar(
            select(func.coalesce(func.max(CategoryRule.sequence), 0)).where(CategoryRule.user_id == user_id)
        )

        rule = CategoryRule(
            user_id=user_id,
            category_id=category_id,
            business_id=business_id,
            field=field.value,
            match_type=match_type.value,
            value=value,
            display_name=display_name,
            is_enabled=True,
            sequence=(last_sequence or 0) + 1,
        )
        db.add(rule)
        await db.commit()

        logger.info("category_rule_created",
                    rule_id=rule.id,
                    user_id=user_id,
                    field=field.value,
                    match_type=match_type.value)
        return rule

    async def set_rule_enabled(self, db: AsyncSession, user_id: str, rule_id: str, enabled: bool) -> CategoryRule:
        rule = await self._get_owned_rule(db, user_id, rule_id)
        rule.is_enabled = enabled
        await db.commit()
        return rule

    async def delete_rule(self, db: AsyncSession, user_id: str, rule_id: str) -> None:
        rule = await self._get_owned_rule(db, user_id, rule_id)
        await db.delete(rule)
        await db.commit()
        logger.info("category_rule_deleted", rule_id=rule_id, user_id=user_id)

    async def find_merchant_rule(self, db: AsyncSession, user_id: str, merchant_name: str) -> Optional[CategoryRule]:
        """Existing merchant-name rule for this merchant (case-insensitive)"""
        result = await db.execute(
            select(CategoryRule).where(
                CategoryRule.user_id == user_id,
                CategoryRule.field == RuleField.MERCHANT_NAME.value,
                func.lower(CategoryRule.value) == merchant_name.strip().lower(),
            )
        )
        return result.scalars().first()

    async def _get_owned_rule(self, db: AsyncSession, user_id: str, rule_id: str) -> CategoryRule:
        user_id = require_user_id(user_id)
        rule = await db.get(CategoryRule, rule_id)
        if rule is None or rule.user_id != user_id:
            raise AuthorizationError("Rule not found or unauthorized")
        return rule


# Singleton instance
category_repository = CategoryRepository()
