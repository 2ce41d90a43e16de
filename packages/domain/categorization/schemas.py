"""
Data schemas for categorization module
"""
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr

from packages.common.schemas.enums import (
    BusinessType,
    TransactionType,
    UsageScope,
)


class CategorizationMethod(str, Enum):
    """Which strategy produced a categorization decision"""
    RULE = "rule"           # Deterministic user rule
    HISTORY = "history"     # Same merchant categorized before
    AI = "ai"               # Language model inference
    NONE = "none"           # Nothing matched; leave for review


class TransactionToCategorize(BaseModel):
    """Transaction fields the strategies look at"""
    merchant_name: Optional[str] = None
    description: Optional[str] = None
    amount: Decimal = Decimal("0")
    transaction_date: Optional[date] = None
    transaction_type: TransactionType = TransactionType.EXPENSE
    currency: Optional[str] = None


class CategoryOption(BaseModel):
    """A category the user may assign"""
    id: str
    name: str
    transaction_type: TransactionType
    usage_scope: Optional[UsageScope] = None
    is_system: bool = False


class BusinessOption(BaseModel):
    """A business the user owns"""
    id: str
    name: str
    type: BusinessType


class UserPreferences(BaseModel):
    usage_type: UsageScope = UsageScope.PERSONAL
    country: Optional[str] = None
    currency: Optional[str] = None


class CategorizationContext(BaseModel):
    """
    Everything strategies may need beyond the transaction itself.

    Rule and history matchers only use user_id; the AI matcher uses the rest.
    """
    user_id: str
    available_categories: List[CategoryOption] = Field(default_factory=list)
    user_preferences: UserPreferences = Field(default_factory=UserPreferences)
    user_businesses: List[BusinessOption] = Field(default_factory=list)
    statement_type: Optional[str] = None
    transaction_type: Optional[TransactionType] = None


class CategorizationResult(BaseModel):
    """
    Transient decision for one transaction.

    Only category_id / business_id are persisted by callers; method and
    confidence are logged.
    """
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    method: CategorizationMethod = CategorizationMethod.NONE
    suggested_category: Optional[str] = Field(None, description="New category proposed by AI")
    is_new_category: bool = False
    is_business_expense: Optional[bool] = None
    business_id: Optional[str] = None
    business_name: Optional[str] = None
    matched_rule_id: Optional[str] = None

    @classmethod
    def none(cls) -> "CategorizationResult":
        return cls(method=CategorizationMethod.NONE, confidence=0.0)

    @property
    def is_match(self) -> bool:
        return self.method != CategorizationMethod.NONE

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "category_id": "0d7f3f7e-4c1b-4b0e-9d0e-0c1f1a2b3c4d",
                "category_name": "Coffee Shops",
                "confidence": 1.0,
                "method": "rule",
                "is_business_expense": False,
            }
        }
    )


class AiCategorizationResponse(BaseModel):
    """
    Strict schema the model's JSON must satisfy.

    Unknown keys or wrong types reject the whole answer.
    """
    model_config = ConfigDict(extra="forbid")

    category_name: StrictStr = Field(..., min_length=1, max_length=120)
    confidence: float = Field(..., ge=0.0, le=1.0)
    is_new_category: StrictBool
    is_business_expense: StrictBool = False
    business_name: Optional[StrictStr] = None
    reasoning: Optional[StrictStr] = None


class CategorizationDecision(BaseModel):
    """User's manual categorization of a stored transaction"""
    category_id: str
    business_id: Optional[str] = None
    apply_to_future: bool = False
