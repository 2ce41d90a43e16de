"""
Imports API Router
Handles file upload, bulk import batches, progress polling, retry and cancel
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.dependencies import get_current_user_id
from packages.common.database import get_db_session
from packages.domain.imports.batch_tracker import batch_tracker
from packages.domain.imports.import_service import import_service
from packages.domain.imports.schemas import (
    BatchEnqueueResult,
    BatchProgress,
    CreateBatchRequest,
    RetryResult,
    UploadedFile,
)

logger = structlog.get_logger()
router = APIRouter()


class BatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    import_type: str
    status: str
    source_format: Optional[str] = None
    statement_type: Optional[str] = None
    currency: Optional[str] = None
    default_business_id: Optional[str] = None
    date_range_start: Optional[date] = None
    date_range_end: Optional[date] = None
    total_files: int
    processed_files: int
    successful_files: int
    failed_files: int
    duplicate_files: int
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class BatchItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    batch_id: str
    file_name: str
    file_format: str
    sort_order: int
    status: str
    retry_count: int
    document_id: Optional[str] = None
    duplicate_of_document_id: Optional[str] = None
    duplicate_match_type: Optional[str] = None
    duplicate_confidence: Optional[float] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    processed_at: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None


class ActivityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    batch_id: str
    batch_item_id: Optional[str] = None
    event_type: str
    message: str
    details: Optional[Dict[str, Any]] = None
    created_at: datetime


class CreateBatchResponse(BaseModel):
    batch: BatchResponse
    enqueue: BatchEnqueueResult


class BatchListResponse(BaseModel):
    batches: List[BatchResponse]
    next_cursor: Optional[str] = None


@router.post("/uploads", response_model=UploadedFile, status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """
    Store one file ahead of batch creation

    Returns the file reference to pass in CreateBatchRequest.files.
    409 if the same bytes were already imported.
    """
    content = await file.read()
    logger.info("import_upload_started",
                filename=file.filename,
                content_type=file.content_type,
                size_bytes=len(content))
    return await import_service.upload_file(db, user_id, file.filename or "upload", content)


@router.post("/batches", response_model=CreateBatchResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_batch(
    request: CreateBatchRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """
    Create a batch and queue one job per file

    Every file_url must come from POST /uploads by the same user, else 403.
    """
    batch, enqueue = await import_service.start_batch_import(db, user_id, request)
    return CreateBatchResponse(batch=BatchResponse.model_validate(batch), enqueue=enqueue)


@router.get("/batches", response_model=BatchListResponse)
async def list_batches(
    limit: int = Query(20, ge=1, le=100, description="Page size"),
    cursor: Optional[str] = Query(None, description="Last batch id of the previous page"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    batches, next_cursor = await batch_tracker.list_batches(db, user_id, limit=limit, cursor=cursor)
    return BatchListResponse(
        batches=[BatchResponse.model_validate(b) for b in batches],
        next_cursor=next_cursor,
    )


@router.get("/batches/{batch_id}", response_model=BatchResponse)
async def get_batch(
    batch_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    return await batch_tracker.get_batch(db, user_id, batch_id)


@router.get("/batches/{batch_id}/progress", response_model=BatchProgress)
async def get_batch_progress(
    batch_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """Polling endpoint: clamped counters, percentage and completion estimate"""
    return await batch_tracker.get_batch_progress(db, user_id, batch_id)


@router.get("/batches/{batch_id}/items", response_model=List[BatchItemResponse])
async def list_batch_items(
    batch_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    return await batch_tracker.list_items(db, user_id, batch_id)


@router.get("/batches/{batch_id}/activity", response_model=List[ActivityResponse])
async def list_batch_activity(
    batch_id: str,
    after_id: Optional[int] = Query(None, description="Only entries newer than this id"),
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    return await import_service.list_activity(db, user_id, batch_id, after_id=after_id, limit=limit)


@router.post("/batches/{batch_id}/cancel", response_model=BatchResponse)
async def cancel_batch(
    batch_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    return await import_service.cancel_batch(db, user_id, batch_id)


@router.post("/batches/{batch_id}/retry-failed", response_model=RetryResult)
async def retry_failed_items(
    batch_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    """Retry every failed item; per-item errors are returned, not raised"""
    return await import_service.retry_all_failed(db, user_id, batch_id)


@router.post("/items/{item_id}/retry", response_model=BatchItemResponse)
async def retry_item(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
):
    return await import_service.retry_item(db, user_id, item_id)
