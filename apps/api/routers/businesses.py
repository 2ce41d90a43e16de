"""
Businesses API Router
Business registry used to attribute expenses (unknown or deleted = Personal)
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.dependencies import get_current_user_id
from packages.common.database import get_db_session
from packages.common.schemas.enums import BusinessType
from packages.domain.categorization.businesses import business_service

router = APIRouter()


class BusinessResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: str
    tax_id: Optional[str] = None
    address: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime


class CreateBusinessRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: BusinessType = BusinessType.BUSINESS
    tax_id: Optional[str] = Field(None, max_length=64)
    address: Optional[str] = None
    description: Optional[str] = None


class UpdateBusinessRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    type: Optional[BusinessType] = None
    tax_id: Optional[str] = Field(None, max_length=64)
    address: Optional[str] = None
    description: Optional[str] = None


@router.get("", response_model=List[BusinessResponse])
async def list_businesses(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    return await business_service.list_businesses(db, user_id)


@router.post("", response_model=BusinessResponse, status_code=status.HTTP_201_CREATED)
async def create_business(
    request: CreateBusinessRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    return await business_service.create_business(
        db,
        user_id,
        request.name,
        business_type=request.type,
        tax_id=request.tax_id,
        address=request.address,
        description=request.description,
    )


@router.patch("/{business_id}", response_model=BusinessResponse)
async def update_business(
    business_id: str,
    request: UpdateBusinessRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    return await business_service.update_business(
        db,
        user_id,
        business_id,
        name=request.name,
        business_type=request.type,
        tax_id=request.tax_id,
        address=request.address,
        description=request.description,
    )


@router.delete("/{business_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_business(
    business_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """Transactions keep the dangling id and read as Personal afterwards"""
    await business_service.delete_business(db, user_id, business_id)
