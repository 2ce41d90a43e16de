"""
Categories API Router
Category and rule management, categorization preview, and manual recategorization
"""
from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.dependencies import get_current_user_id
from packages.common.database import get_db_session
from packages.common.schemas.enums import RuleField, RuleMatchType, TransactionType, UsageScope
from packages.domain.categorization.businesses import business_service
from packages.domain.categorization.categorization_service import categorization_engine
from packages.domain.categorization.category_repository import category_repository
from packages.domain.categorization.schemas import (
    CategorizationDecision,
    CategorizationResult,
    TransactionToCategorize,
)
from packages.domain.categorization.transaction_repository import RecordKind

logger = structlog.get_logger()
router = APIRouter()


class CategoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: str
    transaction_type: str
    usage_scope: Optional[str] = None
    parent_id: Optional[str] = None


class CreateCategoryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    transaction_type: TransactionType = TransactionType.EXPENSE
    usage_scope: Optional[UsageScope] = None
    parent_id: Optional[str] = None


class RenameCategoryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)


class RuleResponse(BaseModel):
    id: str
    category_id: str
    category_name: str
    business_id: Optional[str] = None
    field: str
    match_type: str
    value: str
    display_name: Optional[str] = None
    is_enabled: bool
    created_at: datetime


class CreateRuleRequest(BaseModel):
    category_id: str
    value: str = Field(..., min_length=1, max_length=255)
    field: RuleField = RuleField.MERCHANT_NAME
    match_type: RuleMatchType = RuleMatchType.CONTAINS
    display_name: Optional[str] = None
    business_id: Optional[str] = None


class SetRuleEnabledRequest(BaseModel):
    is_enabled: bool


class RecategorizeResponse(BaseModel):
    record_id: str
    category_id: Optional[str] = None
    business_id: Optional[str] = None
    business_name: str
    created_rule_id: Optional[str] = None


def _rule_response(rule, category) -> RuleResponse:
    return RuleResponse(
        id=rule.id,
        category_id=rule.category_id,
        category_name=category.name,
        business_id=rule.business_id,
        field=rule.field,
        match_type=rule.match_type,
        value=rule.value,
        display_name=rule.display_name,
        is_enabled=rule.is_enabled,
        created_at=rule.created_at,
    )


@router.get("/categories", response_model=List[CategoryResponse])
async def list_categories(
    transaction_type: Optional[TransactionType] = Query(None, description="Filter by direction"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """System categories plus the caller's own"""
    return await category_repository.list_available_categories(db, user_id, transaction_type=transaction_type)


@router.post("/categories", response_model=CategoryResponse, status_code=status.HTTP_201_CREATED)
async def create_category(
    request: CreateCategoryRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    return await category_repository.create_category(
        db,
        user_id,
        request.name,
        transaction_type=request.transaction_type,
        usage_scope=request.usage_scope,
        parent_id=request.parent_id,
    )


@router.patch("/categories/{category_id}", response_model=CategoryResponse)
async def rename_category(
    category_id: str,
    request: RenameCategoryRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    return await category_repository.rename_category(db, user_id, category_id, request.name)


@router.delete("/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_category(
    category_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    await category_repository.delete_category(db, user_id, category_id)


@router.get("/rules", response_model=List[RuleResponse])
async def list_rules(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    rules = await category_repository.list_rules(db, user_id)
    return [_rule_response(rule, category) for rule, category in rules]


@router.post("/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    request: CreateRuleRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    rule = await category_repository.create_rule(
        db,
        user_id,
        category_id=request.category_id,
        value=request.value,
        field=request.field,
        match_type=request.match_type,
        display_name=request.display_name,
        business_id=request.business_id,
    )
    category = await category_repository.get_usable_category(db, user_id, rule.category_id)
    return _rule_response(rule, category)


@router.patch("/rules/{rule_id}", response_model=RuleResponse)
async def set_rule_enabled(
    rule_id: str,
    request: SetRuleEnabledRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    rule = await category_repository.set_rule_enabled(db, user_id, rule_id, request.is_enabled)
    category = await category_repository.get_usable_category(db, user_id, rule.category_id)
    return _rule_response(rule, category)


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    await category_repository.delete_rule(db, user_id, rule_id)


@router.post("/categorize", response_model=CategorizationResult)
async def categorize_preview(
    transaction: TransactionToCategorize,
    use_ai: bool = Query(True, description="Include the AI strategy"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """
    Run the strategy chain for a transaction without storing anything

    New categories proposed by AI are still created (insert-or-fetch).
    """
    context = await categorization_engine.build_context(db, user_id, transaction.transaction_type)
    if use_ai:
        return await categorization_engine.categorize_with_ai(transaction, context, db)
    return await categorization_engine.categorize_without_ai(transaction, context, db)


@router.post("/transactions/{kind}/{record_id}/category", response_model=RecategorizeResponse)
async def recategorize(
    kind: RecordKind,
    record_id: str,
    decision: CategorizationDecision,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """Apply a manual category; apply_to_future learns a merchant rule"""
    record, rule = await categorization_engine.recategorize(db, user_id, kind, record_id, decision)
    return RecategorizeResponse(
        record_id=record.id,
        category_id=record.category_id,
        business_id=record.business_id,
        business_name=await business_service.resolve_business_name(db, user_id, record.business_id),
        created_rule_id=rule.id if rule else None,
    )
