"""
Business registry

Transactions reference businesses through a nullable, non-cascading id.
Deleting a business leaves those ids dangling on purpose so historical
records stay untouched; readers resolve an unknown id to "Personal".
"""
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.errors import AuthorizationError, ValidationError
from packages.common.identity import require_user_id
from packages.common.models import Business
from packages.common.schemas.enums import BusinessType

logger = structlog.get_logger()

PERSONAL_LABEL = "Personal"


class BusinessService:
    """CRUD and display resolution for user businesses"""

    async def list_businesses(self, db: AsyncSession, user_id: str) -> List[Business]:
        user_id = require_user_id(user_id)
        result = await db.execute(
            select(Business).where(Business.user_id == user_id).order_by(Business.name)
        )
        return list(result.scalars().all())

    async def get_owned_business(self, db: AsyncSession, user_id: str, business_id: str) -> Business:
        """
        Load a business the caller owns.

        Raises:
            AuthorizationError: If missing or owned by someone else
        """
        user_id = require_user_id(user_id)
        business = await db.get(Business, business_id)
        if business is None or business.user_id != user_id:
            raise AuthorizationError("Business not found or unauthorized")
        return business

    async def create_business(
        self,
        db: AsyncSession,
        user_id: str,
        name: str,
        business_type: BusinessType = BusinessType.BUSINESS,
        tax_id: Optional[str] = None,
        address: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Business:
        user_id = require_user_id(user_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Business name is required")

        business = Business(
            user_id=user_id,
            name=name,
            type=BusinessType(business_type).value,
            tax_id=tax_id,
            address=address,
            description=description,
        )
        db.add(business)
        await db.commit()

        logger.info("business_created", business_id=business.id, user_id=user_id)
        return business

    async def update_business(
        self,
        db: AsyncSession,
        user_id: str,
        business_id: str,
        name: Optional[str] = None,
        business_type: Optional[BusinessType] = None,
        tax_id: Optional[str] = None,
        address: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Business:
        business = await self.get_owned_business(db, user_id, business_id)

        if name is not None:
            if not name.strip():
                raise ValidationError("Business name is required")
            business.name = name.strip()
        if business_type is not None:
            business.type = BusinessType(business_type).value
        if tax_id is not None:
            business.tax_id = tax_id
        if address is not None:
            business.address = address
        if description is not None:
            business.description = description

        await db.commit()
        return business

    async def delete_business(self, db: AsyncSession, user_id: str, business_id: str) -> None:
        """
        Delete a business without touching referencing transactions.

        Receipts, bank transactions and rules keep the now-dangling id.
        """
        business = await self.get_owned_business(db, user_id, business_id)
        await db.delete(business)
        await db.commit()
        logger.info("business_deleted", business_id=business_id, user_id=user_id)

    async def resolve_business(
        self,
        db: AsyncSession,
        user_id: str,
        business_id: Optional[str],
    ) -> Optional[Business]:
        """Return the owned business for an id, or None when it cannot be resolved"""
        if not business_id:
            return None
        business = await db.get(Business, business_id)
        if business is None or business.user_id != user_id:
            return None
        return business

    async def resolve_business_name(
        self,
        db: AsyncSession,
        user_id: str,
        business_id: Optional[str],
    ) -> str:
        """
        Display name for a transaction's business.

        Null, deleted, or foreign business ids all read as "Personal".
        """
        business = await self.resolve_business(db, user_id, business_id)
        if business is None:
            if business_id:
                logger.debug("business_unresolved", business_id=business_id)
            return PERSONAL_LABEL
        return business.name


# Singleton instance
business_service = BusinessService()
