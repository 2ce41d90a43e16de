"""Tests for the categorization engine and its AI strategy."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from packages.common.errors import AuthorizationError, ProviderError, ValidationError
from packages.common.models import BankTransaction, Category, CategoryRule, Receipt, UserSettings
from packages.common.schemas.enums import TransactionType
from packages.domain.categorization.ai_matcher import AiMatcher
from packages.domain.categorization.businesses import business_service
from packages.domain.categorization.categorization_service import CategorizationEngine
from packages.domain.categorization.category_repository import category_repository
from packages.domain.categorization.schemas import (
    CategorizationDecision,
    CategorizationMethod,
    CategorizationResult,
    TransactionToCategorize,
)
from packages.domain.categorization.transaction_repository import RecordKind
from tests.conftest import OTHER_USER_ID, USER_ID, FakeProvider, make_engine, make_factory


def ai_answer(name, is_new=False, confidence=0.85, business_name=None, is_business=False):
    return {
        "category_name": name,
        "confidence": confidence,
        "is_new_category": is_new,
        "is_business_expense": is_business,
        "business_name": business_name,
    }


class ExplodingStrategy:
    name = "exploding"
    priority = 0

    async def categorize(self, transaction, context, db):
        raise RuntimeError("boom")


class FixedStrategy:
    def __init__(self, name, priority, result):
        self.name = name
        self.priority = priority
        self.result = result
        self.calls = 0

    async def categorize(self, transaction, context, db):
        self.calls += 1
        return self.result


async def test_rule_beats_history_and_ai(db, system_categories):
    coffee = system_categories["Coffee Shops"]
    await category_repository.create_rule(db, USER_ID, coffee.id, "starbucks")
    provider = FakeProvider("primary", [ai_answer("Dining Out")])
    engine = make_engine(provider)

    context = await engine.build_context(db, USER_ID)
    result = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="STARBUCKS"), context, db)

    assert result.method == CategorizationMethod.RULE
    assert result.category_id == coffee.id
    assert provider.calls == []


async def test_history_beats_ai(db, system_categories):
    coffee = system_categories["Coffee Shops"]
    db.add(Receipt(
        user_id=USER_ID,
        merchant_name="Blue Bottle",
        total_amount=Decimal("6.00"),
        category_id=coffee.id,
        created_at=datetime.now(timezone.utc),
    ))
    await db.commit()
    provider = FakeProvider("primary", [ai_answer("Dining Out")])
    engine = make_engine(provider)

    context = await engine.build_context(db, USER_ID)
    result = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="Blue Bottle"), context, db)

    assert result.method == CategorizationMethod.HISTORY
    assert provider.calls == []


async def test_ai_picks_existing_category(db, system_categories):
    engine = make_engine(FakeProvider("primary", [ai_answer("groceries")]))

    context = await engine.build_context(db, USER_ID)
    result = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="SOBEYS"), context, db)

    assert result.method == CategorizationMethod.AI
    assert result.category_id == system_categories["Groceries"].id
    assert result.category_name == "Groceries"
    assert result.confidence == 0.85


async def test_ai_new_category_is_created_once(db, system_categories):
    engine = make_engine(FakeProvider("primary", [ai_answer("Pet Supplies", is_new=True)]))
    context = await engine.build_context(db, USER_ID)

    first = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="PETSMART"), context, db)
    second = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="PET VALU"), context, db)

    assert first.is_new_category is True
    assert first.category_id == second.category_id
    count = await db.scalar(
        select(func.count()).select_from(Category).where(Category.normalized_name == "pet supplies")
    )
    assert count == 1


async def test_ai_unknown_category_falls_through_to_none(db, system_categories):
    engine = make_engine(FakeProvider("primary", [ai_answer("Made Up Thing", is_new=False)]))

    context = await engine.build_context(db, USER_ID)
    result = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="MYSTERY"), context, db)

    assert result.method == CategorizationMethod.NONE
    assert result.category_id is None


async def test_ai_unknown_category_raises_from_matcher(db, system_categories):
    matcher = AiMatcher(llm_factory=make_factory(FakeProvider("primary", [ai_answer("Made Up Thing")])))
    context = await CategorizationEngine(strategies=[]).build_context(db, USER_ID)

    with pytest.raises(ProviderError):
        await matcher.categorize(TransactionToCategorize(merchant_name="MYSTERY"), context, db)


async def test_ai_only_sees_categories_of_the_transaction_type(db, system_categories):
    provider = FakeProvider("primary", [ai_answer("Salary")])
    engine = make_engine(provider)

    context = await engine.build_context(db, USER_ID, TransactionType.EXPENSE)
    result = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="ACME PAYROLL"), context, db)

    # Salary is an income category, so an expense cannot use it
    assert result.method == CategorizationMethod.NONE
    assert "- Salary" not in provider.calls[0]["prompt"]
    assert "- Groceries" in provider.calls[0]["prompt"]


async def test_all_providers_down_yields_none(db, system_categories):
    engine = make_engine(
        FakeProvider("primary", error=RuntimeError("down")),
        FakeProvider("secondary", error=TimeoutError("slow")),
    )

    context = await engine.build_context(db, USER_ID)
    result = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="ANYTHING"), context, db)

    assert result == CategorizationResult.none()


async def test_failing_strategy_is_skipped(db):
    fallback = FixedStrategy("fixed", 5, CategorizationResult(
        category_id="cat-1", category_name="Travel", confidence=0.7, method=CategorizationMethod.HISTORY,
    ))
    engine = CategorizationEngine(strategies=[fallback, ExplodingStrategy()])

    context = await engine.build_context(db, USER_ID)
    result = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="X"), context, db)

    assert result.category_id == "cat-1"
    assert fallback.calls == 1


async def test_categorize_without_ai_skips_ai(db, system_categories):
    provider = FakeProvider("primary", [ai_answer("Groceries")])
    engine = make_engine(provider)

    context = await engine.build_context(db, USER_ID)
    result = await engine.categorize_without_ai(TransactionToCategorize(merchant_name="SOBEYS"), context, db)

    assert result.method == CategorizationMethod.NONE
    assert provider.calls == []


async def test_ai_business_attribution(db, system_categories):
    business = await business_service.create_business(db, USER_ID, "Lakeside Consulting")
    engine = make_engine(FakeProvider("primary", [
        ai_answer("Office Supplies", business_name="lakeside consulting", is_business=True),
    ]))

    personal = await engine.build_context(db, USER_ID)
    assert all(c.name != "Office Supplies" for c in personal.available_categories)

    db.add(UserSettings(user_id=USER_ID, usage_type="business", currency="CAD"))
    await db.commit()
    context = await engine.build_context(db, USER_ID)
    result = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="STAPLES"), context, db)

    assert result.method == CategorizationMethod.AI
    assert result.category_id == system_categories["Office Supplies"].id
    assert result.business_id == business.id
    assert result.business_name == "Lakeside Consulting"
    assert result.is_business_expense is True


async def test_deleted_business_resolves_to_personal(db, system_categories):
    business = await business_service.create_business(db, USER_ID, "Side Gig")
    await category_repository.create_rule(
        db, USER_ID, system_categories["Software & Services"].id, "github",
        business_id=business.id,
    )
    await business_service.delete_business(db, USER_ID, business.id)

    engine = make_engine(FakeProvider("primary", [ai_answer("Subscriptions")]))
    context = await engine.build_context(db, USER_ID)
    result = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="GITHUB"), context, db)

    assert result.method == CategorizationMethod.RULE
    assert result.business_id is None
    assert result.is_business_expense is False
    assert await business_service.resolve_business_name(db, USER_ID, business.id) == "Personal"


async def test_recategorize_learns_a_rule(db, system_categories):
    receipt = Receipt(user_id=USER_ID, merchant_name="Corner Cafe", total_amount=Decimal("4.25"))
    db.add(receipt)
    await db.commit()
    coffee = system_categories["Coffee Shops"]
    engine = make_engine(FakeProvider("primary", [ai_answer("Dining Out")]))

    record, rule = await engine.recategorize(
        db, USER_ID, RecordKind.RECEIPT, receipt.id,
        CategorizationDecision(category_id=coffee.id, apply_to_future=True),
    )

    assert record.category_id == coffee.id
    assert rule is not None
    assert rule.value == "Corner Cafe"
    assert rule.match_type == "exact"

    context = await engine.build_context(db, USER_ID)
    result = await engine.categorize_with_ai(TransactionToCategorize(merchant_name="corner cafe"), context, db)
    assert result.method == CategorizationMethod.RULE
    assert result.category_id == coffee.id


async def test_recategorize_does_not_duplicate_rules(db, system_categories):
    coffee = system_categories["Coffee Shops"]
    engine = make_engine(FakeProvider("primary", [ai_answer("Dining Out")]))
    for _ in range(2):
        receipt = Receipt(user_id=USER_ID, merchant_name="Corner Cafe")
        db.add(receipt)
        await db.commit()
        await engine.recategorize(
            db, USER_ID, RecordKind.RECEIPT, receipt.id,
            CategorizationDecision(category_id=coffee.id, apply_to_future=True),
        )

    count = await db.scalar(select(func.count()).select_from(CategoryRule))
    assert count == 1


async def test_recategorize_without_learning(db, system_categories):
    receipt = Receipt(user_id=USER_ID, merchant_name="Corner Cafe")
    db.add(receipt)
    await db.commit()

    _, rule = await make_engine().recategorize(
        db, USER_ID, RecordKind.RECEIPT, receipt.id,
        CategorizationDecision(category_id=system_categories["Coffee Shops"].id),
    )

    assert rule is None


async def test_recategorize_rejects_foreign_records(db, system_categories):
    receipt = Receipt(user_id=OTHER_USER_ID, merchant_name="Corner Cafe")
    db.add(receipt)
    await db.commit()

    with pytest.raises(AuthorizationError):
        await make_engine().recategorize(
            db, USER_ID, RecordKind.RECEIPT, receipt.id,
            CategorizationDecision(category_id=system_categories["Coffee Shops"].id),
        )


async def test_recategorize_rejects_wrong_direction(db, system_categories):
    transaction = BankTransaction(
        user_id=USER_ID,
        merchant_name="ACME PAYROLL",
        amount=Decimal("2500.00"),
        transaction_date=date(2026, 9, 30),
        transaction_type=TransactionType.INCOME.value,
    )
    db.add(transaction)
    await db.commit()

    with pytest.raises(ValidationError):
        await make_engine().recategorize(
            db, USER_ID, RecordKind.BANK_TRANSACTION, transaction.id,
            CategorizationDecision(category_id=system_categories["Groceries"].id),
        )


async def test_prompt_flags_financing_payments(db, system_categories):
    provider = FakeProvider("primary", [ai_answer("Dining Out")])
    engine = make_engine(provider)

    context = await engine.build_context(db, USER_ID)
    await engine.categorize_with_ai(TransactionToCategorize(merchant_name="DELL FINANCIAL SVCS"), context, db)
    await engine.categorize_with_ai(TransactionToCategorize(merchant_name="SUBWAY 0042"), context, db)

    assert "Note: looks like a loan" in provider.calls[0]["prompt"]
    assert "Note: looks like a loan" not in provider.calls[1]["prompt"]
