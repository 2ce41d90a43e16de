"""
Import Service - public operations for bulk imports

Creates batches and their jobs, uploads files, retries failed items and
cancels batches. Ownership is checked before any state changes.
"""
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.config import get_settings
from packages.common.errors import ValidationError
from packages.common.models import BatchActivityLog, ImportBatch, ImportBatchItem
from packages.common.schemas.enums import BatchStatus, FileFormat, ImportType, ItemStatus
from packages.domain.imports.activity_logger import ActivityLogger, activity_logger
from packages.domain.imports.batch_tracker import BatchTracker, batch_tracker
from packages.domain.imports.duplicate_detector import (
    DuplicateDetector,
    compute_content_hash,
    duplicate_detector,
)
from packages.domain.imports.queue_sender import QueueSender, queue_sender
from packages.domain.imports.schemas import (
    BatchEnqueueResult,
    CreateBatchRequest,
    JobPayload,
    RetryResult,
    UploadedFile,
)
from packages.domain.imports.storage import assert_owned_upload, store_upload

logger = structlog.get_logger()

ENQUEUE_FAILED = "ENQUEUE_FAILED"


def build_job_payload(batch: ImportBatch, item: ImportBatchItem) -> JobPayload:
    """Everything a worker needs, copied from the batch and item rows"""
    return JobPayload(
        batch_id=batch.id,
        batch_item_id=item.id,
        file_url=item.file_url,
        file_name=item.file_name,
        file_format=FileFormat(item.file_format),
        user_id=batch.user_id,
        import_type=ImportType(batch.import_type),
        source_format=batch.source_format,
        statement_type=batch.statement_type,
        currency=batch.currency,
        default_business_id=batch.default_business_id,
        date_range_start=batch.date_range_start,
        date_range_end=batch.date_range_end,
        order=item.sort_order,
    )


class ImportService:
    """Orchestrates batch creation, enqueueing, retry and cancel"""

    def __init__(
        self,
        tracker: Optional[BatchTracker] = None,
        sender: Optional[QueueSender] = None,
        detector: Optional[DuplicateDetector] = None,
        activity: Optional[ActivityLogger] = None,
        storage_root: Optional[str] = None,
    ):
        self.tracker = tracker or batch_tracker
        self.sender = sender or queue_sender
        self.detector = detector or duplicate_detector
        self.activity = activity or activity_logger
        self.storage_root = storage_root

    async def upload_file(
        self,
        db: AsyncSession,
        user_id: str,
        file_name: str,
        data: bytes,
        storage_root: Optional[str] = None,
    ) -> UploadedFile:
        """
        Store an uploaded file ahead of batch creation.

        Raises:
            ValidationError: Empty or oversized file
            DuplicateFileError: The same bytes were already imported
        """
        await self.detector.assert_not_imported(db, user_id, compute_content_hash(data))
        file_url, _ = await store_upload(
            user_id, file_name, data, storage_root=storage_root or self.storage_root
        )
        return UploadedFile(file_name=file_name, file_url=file_url, file_size_bytes=len(data))

    async def start_batch_import(
        self,
        db: AsyncSession,
        user_id: str,
        request: CreateBatchRequest,
    ) -> Tuple[ImportBatch, BatchEnqueueResult]:
        """
        Create a batch and enqueue one job per file.

        Every file must be one of the user's own uploads. Items whose job
        could not be enqueued are marked failed (ENQUEUE_FAILED) so the
        batch can still finish.

        Args:
            db: Database session
            user_id: Owner
            request: Files and batch-level hints

        Returns:
            (batch, enqueue summary)

        Raises:
            AuthorizationError: A file is not in the user's upload directory
        """
        for uploaded in request.files:
            assert_owned_upload(user_id, uploaded.file_url, self.storage_root)

        batch, items = await self.tracker.create_batch(db, user_id, request)
        await self.activity.batch_created(db, batch.id, batch.total_files, batch.import_type)
        for item in items:
            await self.activity.file_uploaded(db, batch.id, item.id, item.file_name)

        summary = self.sender.enqueue_batch(build_job_payload(batch, item) for item in items)
        for item_id, error in summary.failed_items.items():
            await self.tracker.mark_item_failed(
                db, batch.id, item_id,
                error_message=f"Could not queue file: {error}",
                error_code=ENQUEUE_FAILED,
            )

        batch = await self.tracker.recompute_batch_stats(db, batch.id)
        logger.info("import_batch_started",
                    batch_id=batch.id,
                    enqueued=summary.enqueued,
                    enqueue_failed=summary.failed)
        return batch, summary

    async def retry_item(self, db: AsyncSession, user_id: str, item_id: str) -> ImportBatchItem:
        """
        Reset a failed item to pending and enqueue it again.

        Raises:
            AuthorizationError: Item not owned by the user
            ValidationError: Item not failed, retry limit reached, or batch cancelled
        """
        item, batch = await self.tracker.get_item(db, user_id, item_id)

        if item.status != ItemStatus.FAILED.value:
            raise ValidationError(f"Only failed items can be retried (item is {item.status})")
        if batch.status == BatchStatus.CANCELLED.value:
            raise ValidationError("Cannot retry items of a cancelled import")
        if not item.file_url:
            raise ValidationError("Item has no file to retry")
        max_retries = get_settings().max_item_retries
        if item.retry_count >= max_retries:
            raise ValidationError(f"Retry limit of {max_retries} reached for {item.file_name}")

        if not await self.tracker.reset_item_for_retry(db, batch.id, item.id):
            raise ValidationError("Item is no longer failed")

        item, batch = await self.tracker.get_item(db, user_id, item_id)
        await self.activity.item_retried(db, batch.id, item.id, item.file_name, item.retry_count)

        result = self.sender.enqueue_batch_item(build_job_payload(batch, item))
        if not result.success:
            await self.tracker.mark_item_failed(
                db, batch.id, item.id,
                error_message=f"Could not queue file: {result.error}",
                error_code=ENQUEUE_FAILED,
            )
            raise ValidationError(f"Could not queue retry: {result.error}")

        logger.info("batch_item_retried", batch_id=batch.id, batch_item_id=item.id, retry_count=item.retry_count)
        return item

    async def retry_all_failed(self, db: AsyncSession, user_id: str, batch_id: str) -> RetryResult:
        """Retry each failed item independently; partial success is reported"""
        await self.tracker.get_batch(db, user_id, batch_id)
        result = await db.execute(
            select(ImportBatchItem.id, ImportBatchItem.file_name)
            .where(
                ImportBatchItem.batch_id == batch_id,
                ImportBatchItem.status == ItemStatus.FAILED.value,
            )
            .order_by(ImportBatchItem.sort_order)
        )
        failed = list(result.all())

        retried = 0
        errors = []
        for item_id, file_name in failed:
            try:
                await self.retry_item(db, user_id, item_id)
                retried += 1
            except ValidationError as e:
                errors.append(f"{file_name}: {e.message}")

        return RetryResult(success=not errors, retried_count=retried, errors=errors)

    async def cancel_batch(self, db: AsyncSession, user_id: str, batch_id: str) -> ImportBatch:
        return await self.tracker.cancel_batch(db, user_id, batch_id)

    async def list_activity(
        self,
        db: AsyncSession,
        user_id: str,
        batch_id: str,
        after_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[BatchActivityLog]:
        await self.tracker.get_batch(db, user_id, batch_id)
        return await self.activity.list_events(db, batch_id, after_id=after_id, limit=limit)


# Singleton instance
import_service = ImportService()
