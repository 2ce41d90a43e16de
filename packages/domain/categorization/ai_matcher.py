"""
AI Matcher - language model categorization (last resort)

The model sees only categories of the transaction's own type. Its JSON
answer is validated against AiCategorizationResponse before use; a reply
naming an unknown existing category is a failure, not a guess.
"""
from typing import Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.errors import ProviderError
from packages.common.llm import LlmProviderFactory, get_llm_factory
from packages.domain.categorization.category_repository import normalize_name
from packages.domain.categorization.prompts import build_categorization_prompt
from packages.domain.categorization.schemas import (
    AiCategorizationResponse,
    BusinessOption,
    CategorizationContext,
    CategorizationMethod,
    CategorizationResult,
    CategoryOption,
    TransactionToCategorize,
)

logger = structlog.get_logger()


class AiMatcher:
    """Priority 100: provider chain (primary -> secondary)"""

    name = "ai"
    priority = 100

    def __init__(self, llm_factory: Optional[LlmProviderFactory] = None, temperature: float = 0.1):
        self._llm_factory = llm_factory
        self.temperature = temperature

    @property
    def llm_factory(self) -> LlmProviderFactory:
        """Lazy-load default provider chain"""
        if self._llm_factory is None:
            self._llm_factory = get_llm_factory()
        return self._llm_factory

    async def categorize(
        self,
        transaction: TransactionToCategorize,
        context: CategorizationContext,
        db: AsyncSession,
    ) -> CategorizationResult:
        """
        Ask the provider chain for a category.

        Raises:
            ProviderError: All providers failed, output was unschematized,
                or the named category does not exist
        """
        transaction_type = context.transaction_type or transaction.transaction_type
        categories = [c for c in context.available_categories if c.transaction_type == transaction_type]

        prompt = build_categorization_prompt(transaction, context, categories)
        parsed, response = await self.llm_factory.generate_json(
            prompt,
            AiCategorizationResponse,
            temperature=self.temperature,
            max_tokens=512,
        )

        logger.info("ai_categorization_response",
                    provider=response.provider,
                    category=parsed.category_name,
                    confidence=parsed.confidence,
                    is_new_category=parsed.is_new_category,
                    input_tokens=response.input_tokens,
                    output_tokens=response.output_tokens)

        by_name: Dict[str, CategoryOption] = {normalize_name(c.name): c for c in categories}
        existing = by_name.get(normalize_name(parsed.category_name))

        business = self._resolve_business(parsed.business_name, context.user_businesses)
        result = CategorizationResult(
            confidence=parsed.confidence,
            method=CategorizationMethod.AI,
            is_business_expense=parsed.is_business_expense,
            business_id=business.id if business else None,
            business_name=business.name if business else None,
        )

        if existing is not None:
            # Also covers "new" proposals that actually name an existing category
            result.category_id = existing.id
            result.category_name = existing.name
            return result

        if not parsed.is_new_category:
            raise ProviderError(
                f"AI returned unknown category '{parsed.category_name}'",
                provider=response.provider,
            )

        result.category_name = parsed.category_name.strip()
        result.suggested_category = parsed.category_name.strip()
        result.is_new_category = True
        return result

    @staticmethod
    def _resolve_business(name: Optional[str], businesses: List[BusinessOption]) -> Optional[BusinessOption]:
        if not name:
            return None
        wanted = normalize_name(name)
        for business in businesses:
            if normalize_name(business.name) == wanted:
                return business
        logger.info("ai_business_unresolved", business_name=name)
        return None


ai_matcher = AiMatcher()
