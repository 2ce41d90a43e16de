"""
Prompt builders for AI categorization
"""
from typing import List

from packages.common.schemas.enums import TransactionType
from packages.domain.categorization.schemas import (
    CategorizationContext,
    CategoryOption,
    TransactionToCategorize,
)

# Phrases that mark a charge as a financing/credit payment rather than a purchase
FINANCIAL_SERVICE_KEYWORDS = [
    "FINANCIAL",
    "FINANCING",
    "LOAN",
    "CREDIT",
    "PAYMENT PLAN",
    "INSTALLMENT",
    "AFFIRM",
    "KLARNA",
    "BILL PYMT",
    "AUTO PAY",
    "AUTOPAY",
]


def looks_like_financial_service(transaction: TransactionToCategorize) -> bool:
    """True when merchant/description contains a financing keyword"""
    text = f"{transaction.merchant_name or ''} {transaction.description or ''}".upper()
    return any(keyword in text for keyword in FINANCIAL_SERVICE_KEYWORDS)


def build_categorization_prompt(
    transaction: TransactionToCategorize,
    context: CategorizationContext,
    categories: List[CategoryOption],
) -> str:
    """
    Build AI prompt for transaction categorization.

    Args:
        transaction: Transaction to classify
        context: User preferences, businesses, statement type
        categories: Categories already filtered to the transaction type

    Returns:
        Formatted prompt
    """
    transaction_type = context.transaction_type or transaction.transaction_type
    opposite = (
        TransactionType.INCOME if transaction_type == TransactionType.EXPENSE else TransactionType.EXPENSE
    )
    prefs = context.user_preferences

    prompt = f"""You are a bookkeeping assistant that assigns spending and income categories.

TRANSACTION:
  Merchant: {transaction.merchant_name or "unknown"}
  Description: {transaction.description or "none"}
  Amount: {transaction.amount} {transaction.currency or prefs.currency or ""}
  Date: {transaction.transaction_date.isoformat() if transaction.transaction_date else "unknown"}
  Type: {transaction_type.value}
"""
    if context.statement_type:
        prompt += f"  Statement type: {context.statement_type}\n"
    if looks_like_financial_service(transaction):
        prompt += "  Note: looks like a loan or financing payment\n"

    prompt += f"""
USER:
  Country: {prefs.country or "unknown"}
  Usage: {prefs.usage_type.value}
"""

    prompt += f"\nAVAILABLE {transaction_type.value.upper()} CATEGORIES:\n"
    for category in categories:
        prompt += f"- {category.name}\n"

    if context.user_businesses:
        prompt += "\nUSER BUSINESSES (for business attribution):\n"
        for business in context.user_businesses:
            prompt += f"- {business.name} ({business.type.value})\n"

    prompt += f"""
RULES:
1. This is an {transaction_type.value} transaction. NEVER choose a {opposite.value} category.
2. Prefer an existing category from the list (exact spelling). Only propose a new category when
   none fits; then set "is_new_category" to true and give a short, general name (2-3 words).
3. Loans and financing are not purchases. If the merchant or description contains phrases like
   {", ".join(FINANCIAL_SERVICE_KEYWORDS)} (for example "DELL FINANCIAL", "APPLE CARD INSTALLMENT"),
   categorize as a loan/financing payment, never as the product category of the brand.
4. Set "is_business_expense" to true only when the transaction clearly belongs to one of the user's
   businesses, and put that business's exact name in "business_name". Otherwise business_name is null.
5. Confidence: 0.9+ clear merchant, 0.7-0.9 likely, below 0.7 uncertain.

RESPONSE FORMAT (return ONLY this JSON, no other text):
{{
  "category_name": "Category name from the list or a new one",
  "confidence": 0.9,
  "is_new_category": false,
  "is_business_expense": false,
  "business_name": null
}}
"""
    return prompt
