"""
Batch Tracker - batch/item state machine and progress counters

Batch status and counters are always recomputed from the full item set
(never incremented), so the recompute is idempotent and tolerates
concurrent, duplicated or out-of-order item updates.

Item:  pending -> processing -> {completed | failed | duplicate | skipped}
       failed -> pending (explicit retry)
Batch: pending -> processing -> {completed | failed}; cancelled by user action
"""
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.config import get_settings
from packages.common.errors import AuthorizationError, ValidationError
from packages.common.identity import require_user_id
from packages.common.models import ImportBatch, ImportBatchItem, utcnow
from packages.common.schemas.enums import (
    TERMINAL_ITEM_STATUSES,
    BatchStatus,
    ItemStatus,
)
from packages.domain.categorization.businesses import business_service
from packages.domain.imports.activity_logger import ActivityLogger, activity_logger
from packages.domain.imports.schemas import (
    BatchProgress,
    CreateBatchRequest,
    detect_file_format,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class BatchStats:
    """Counters derived from item statuses (already clamped to total_files)"""
    total_files: int
    processed_files: int
    successful_files: int
    failed_files: int
    duplicate_files: int
    skipped_files: int
    pending_files: int
    processing_files: int
    item_count: int

    @property
    def all_terminal(self) -> bool:
        return self.item_count > 0 and self.pending_files == 0 and self.processing_files == 0

    def counters(self) -> dict:
        return {
            "processed_files": self.processed_files,
            "successful_files": self.successful_files,
            "failed_files": self.failed_files,
            "duplicate_files": self.duplicate_files,
        }


def compute_batch_stats(total_files: int, statuses: Iterable[str]) -> BatchStats:
    """
    Count item statuses and clamp every counter to total_files.

    Args:
        total_files: Files declared at batch creation
        statuses: Current status of every item

    Returns:
        BatchStats
    """
    counts = Counter(ItemStatus(s) for s in statuses)
    item_count = sum(counts.values())
    processed = sum(counts[s] for s in TERMINAL_ITEM_STATUSES)

    def clamp(value: int) -> int:
        return max(0, min(value, total_files))

    return BatchStats(
        total_files=total_files,
        processed_files=clamp(processed),
        successful_files=clamp(counts[ItemStatus.COMPLETED]),
        failed_files=clamp(counts[ItemStatus.FAILED]),
        duplicate_files=clamp(counts[ItemStatus.DUPLICATE]),
        skipped_files=clamp(counts[ItemStatus.SKIPPED]),
        pending_files=counts[ItemStatus.PENDING],
        processing_files=counts[ItemStatus.PROCESSING],
        item_count=item_count,
    )


def derive_batch_status(current: BatchStatus, stats: BatchStats) -> BatchStatus:
    """
    Pure batch status function.

    - cancelled is sticky
    - all items terminal: completed if any completed/duplicate, else failed
    - any item started or finished: processing
    - otherwise pending
    """
    current = BatchStatus(current)
    if current == BatchStatus.CANCELLED:
        return current
    if stats.item_count == 0:
        return current
    if stats.all_terminal:
        if stats.successful_files + stats.duplicate_files > 0:
            return BatchStatus.COMPLETED
        return BatchStatus.FAILED
    if stats.processing_files > 0 or stats.processed_files > 0:
        return BatchStatus.PROCESSING
    return BatchStatus.PENDING


def completion_percentage(processed_files: int, total_files: int) -> float:
    if total_files <= 0:
        return 0.0
    return round(min(processed_files, total_files) / total_files * 100, 2)


class BatchTracker:
    """Creates batches, applies item transitions, and recomputes batch state"""

    def __init__(self, activity: Optional[ActivityLogger] = None):
        self.activity = activity or activity_logger

    # ---- Creation & lookup --------------------------------------------------------------

    async def create_batch(
        self,
        db: AsyncSession,
        user_id: str,
        request: CreateBatchRequest,
    ) -> Tuple[ImportBatch, List[ImportBatchItem]]:
        """
        Create one batch and one pending item per file.

        Raises:
            AuthorizationError: default_business_id not owned by the user
        """
        user_id = require_user_id(user_id)
        if request.default_business_id:
            await business_service.get_owned_business(db, user_id, request.default_business_id)

        batch = ImportBatch(
            user_id=user_id,
            import_type=request.import_type.value,
            source_format=request.source_format,
            statement_type=request.statement_type,
            currency=request.currency.upper() if request.currency else None,
            default_business_id=request.default_business_id,
            date_range_start=request.date_range_start,
            date_range_end=request.date_range_end,
            status=BatchStatus.PENDING.value,
            total_files=len(request.files),
        )
        db.add(batch)
        await db.flush()

        items = []
        for order, uploaded in enumerate(request.files):
            item = ImportBatchItem(
                batch_id=batch.id,
                file_name=uploaded.file_name,
                file_url=uploaded.file_url,
                file_format=detect_file_format(uploaded.file_name).value,
                file_size_bytes=uploaded.file_size_bytes,
                sort_order=order,
                status=ItemStatus.PENDING.value,
            )
            db.add(item)
            items.append(item)

        await db.commit()

        logger.info("import_batch_created",
                    batch_id=batch.id,
                    user_id=user_id,
                    import_type=batch.import_type,
                    total_files=batch.total_files)
        return batch, items

    async def get_batch(self, db: AsyncSession, user_id: str, batch_id: str) -> ImportBatch:
        """
        Load a batch the caller owns.

        Raises:
            AuthorizationError: Missing or owned by someone else
        """
        user_id = require_user_id(user_id)
        batch = await db.get(ImportBatch, batch_id, populate_existing=True)
        if batch is None or batch.user_id != user_id:
            raise AuthorizationError("Batch not found or unauthorized")
        return batch

    async def get_item(self, db: AsyncSession, user_id: str, item_id: str) -> Tuple[ImportBatchItem, ImportBatch]:
        """Load an item through its batch's ownership"""
        user_id = require_user_id(user_id)
        item = await db.get(ImportBatchItem, item_id, populate_existing=True)
        if item is None:
            raise AuthorizationError("Batch item not found or unauthorized")
        batch = await db.get(ImportBatch, item.batch_id, populate_existing=True)
        if batch is None or batch.user_id != user_id:
            raise AuthorizationError("Batch item not found or unauthorized")
        return item, batch

    async def list_items(self, db: AsyncSession, user_id: str, batch_id: str) -> List[ImportBatchItem]:
        """Items in display order"""
        await self.get_batch(db, user_id, batch_id)
        result = await db.execute(
            select(ImportBatchItem)
            .where(ImportBatchItem.batch_id == batch_id)
            .order_by(ImportBatchItem.sort_order)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_batches(
        self,
        db: AsyncSession,
        user_id: str,
        limit: int = 20,
        cursor: Optional[str] = None,
    ) -> Tuple[List[ImportBatch], Optional[str]]:
        """
        Newest-first batches with cursor pagination.

        Args:
            limit: Page size (1-100)
            cursor: Id of the last batch of the previous page

        Returns:
            (batches, next_cursor or None)
        """
        user_id = require_user_id(user_id)
        if limit < 1 or limit > 100:
            raise ValidationError("limit must be between 1 and 100")

        query = select(ImportBatch).where(ImportBatch.user_id == user_id)
        if cursor:
            anchor = await db.get(ImportBatch, cursor)
            if anchor is None or anchor.user_id != user_id:
                raise ValidationError("Invalid cursor")
            query = query.where(
                or_(
                    ImportBatch.created_at < anchor.created_at,
                    and_(ImportBatch.created_at == anchor.created_at, ImportBatch.id < anchor.id),
                )
            )

        query = query.order_by(ImportBatch.created_at.desc(), ImportBatch.id.desc()).limit(limit + 1)
        result = await db.execute(query)
        batches = list(result.scalars().all())

        next_cursor = None
        if len(batches) > limit:
            batches = batches[:limit]
            next_cursor = batches[-1].id
        return batches, next_cursor

    # ---- Recompute ----------------------------------------------------------------------

    async def recompute_batch_stats(self, db: AsyncSession, batch_id: str) -> ImportBatch:
        """
        Recompute counters and status from the full item set.

        Idempotent: calling twice with no item change yields identical values.
        The batch row is locked (FOR UPDATE where supported) for the duration.
        """
        result = await db.execute(
            select(ImportBatch)
            .where(ImportBatch.id == batch_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        batch = result.scalar_one()

        status_rows = await db.execute(
            select(ImportBatchItem.status).where(ImportBatchItem.batch_id == batch_id)
        )
        stats = compute_batch_stats(batch.total_files, [row[0] for row in status_rows])

        previous = BatchStatus(batch.status)
        new_status = derive_batch_status(previous, stats)
        now = utcnow()

        batch.processed_files = stats.processed_files
        batch.successful_files = stats.successful_files
        batch.failed_files = stats.failed_files
        batch.duplicate_files = stats.duplicate_files
        batch.status = new_status.value

        if new_status != BatchStatus.PENDING and batch.started_at is None:
            batch.started_at = now
        if new_status in (BatchStatus.COMPLETED, BatchStatus.FAILED):
            if previous != new_status or batch.completed_at is None:
                batch.completed_at = now
        elif new_status != BatchStatus.CANCELLED:
            # Reopened by a retry
            batch.completed_at = None

        await db.commit()

        if previous != new_status:
            logger.info("import_batch_status_changed",
                        batch_id=batch_id,
                        previous=previous.value,
                        status=new_status.value,
                        **stats.counters())
            if new_status in (BatchStatus.COMPLETED, BatchStatus.FAILED):
                await self.activity.batch_completed(db, batch_id, new_status.value, stats.counters())

        return batch

    # ---- Item transitions ---------------------------------------------------------------

    async def _update_item(self, db: AsyncSession, item_id: str, where_status: Optional[ItemStatus], **values) -> bool:
        stmt = update(ImportBatchItem).where(ImportBatchItem.id == item_id)
        if where_status is not None:
            stmt = stmt.where(ImportBatchItem.status == where_status.value)
        result = await db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        await db.commit()
        return result.rowcount > 0

    async def mark_item_processing(self, db: AsyncSession, batch_id: str, item_id: str) -> bool:
        """
        Claim a pending item (atomic pending -> processing).

        Returns:
            False when the item was not pending (already claimed, skipped, ...)
        """
        claimed = await self._update_item(
            db, item_id, ItemStatus.PENDING,
            status=ItemStatus.PROCESSING.value,
            started_at=utcnow(),
        )
        if claimed:
            await self.recompute_batch_stats(db, batch_id)
        return claimed

    async def mark_item_completed(
        self, db: AsyncSession, batch_id: str, item_id: str, document_id: str, duration_ms: int
    ) -> ImportBatch:
        await self._update_item(
            db, item_id, None,
            status=ItemStatus.COMPLETED.value,
            document_id=document_id,
            error_message=None,
            error_code=None,
            processed_at=utcnow(),
            processing_duration_ms=duration_ms,
        )
        return await self.recompute_batch_stats(db, batch_id)

    async def mark_item_duplicate(
        self,
        db: AsyncSession,
        batch_id: str,
        item_id: str,
        document_id: str,
        duplicate_of_document_id: str,
        match_type: str,
        confidence: float,
        duration_ms: int,
    ) -> ImportBatch:
        await self._update_item(
            db, item_id, None,
            status=ItemStatus.DUPLICATE.value,
            document_id=document_id,
            duplicate_of_document_id=duplicate_of_document_id,
            duplicate_match_type=match_type,
            duplicate_confidence=confidence,
            processed_at=utcnow(),
            processing_duration_ms=duration_ms,
        )
        return await self.recompute_batch_stats(db, batch_id)

    async def mark_item_failed(
        self,
        db: AsyncSession,
        batch_id: str,
        item_id: str,
        error_message: str,
        error_code: str = "PROCESSING_ERROR",
        duration_ms: Optional[int] = None,
        document_id: Optional[str] = None,
    ) -> ImportBatch:
        values = dict(
            status=ItemStatus.FAILED.value,
            error_message=error_message,
            error_code=error_code,
            processed_at=utcnow(),
            processing_duration_ms=duration_ms,
        )
        if document_id:
            values["document_id"] = document_id
        await self._update_item(db, item_id, None, **values)
        return await self.recompute_batch_stats(db, batch_id)

    async def mark_item_skipped(self, db: AsyncSession, batch_id: str, item_id: str) -> ImportBatch:
        await self._update_item(
            db, item_id, ItemStatus.PENDING,
            status=ItemStatus.SKIPPED.value,
            processed_at=utcnow(),
        )
        return await self.recompute_batch_stats(db, batch_id)

    async def reset_item_for_retry(self, db: AsyncSession, batch_id: str, item_id: str) -> bool:
        """Atomic failed -> pending with retry_count + 1 and cleared error fields"""
        reset = await self._update_item(
            db, item_id, ItemStatus.FAILED,
            status=ItemStatus.PENDING.value,
            retry_count=ImportBatchItem.retry_count + 1,
            error_message=None,
            error_code=None,
            document_id=None,
            started_at=None,
            processed_at=None,
            processing_duration_ms=None,
        )
        if reset:
            await self.recompute_batch_stats(db, batch_id)
        return reset

    # ---- Progress & cancel --------------------------------------------------------------

    async def get_batch_progress(self, db: AsyncSession, user_id: str, batch_id: str) -> BatchProgress:
        """Clamped progress with remaining count and completion estimate"""
        batch = await self.get_batch(db, user_id, batch_id)
        max_retries = get_settings().max_item_retries

        processed = min(batch.processed_files, batch.total_files)
        remaining = max(batch.total_files - processed, 0)

        avg_duration = await db.scalar(
            select(func.avg(ImportBatchItem.processing_duration_ms)).where(
                ImportBatchItem.batch_id == batch_id,
                ImportBatchItem.processing_duration_ms.is_not(None),
            )
        )
        estimated = None
        if remaining and avg_duration and batch.status not in (BatchStatus.CANCELLED.value,):
            estimated = datetime.now(timezone.utc) + timedelta(milliseconds=float(avg_duration) * remaining)

        retryable = await db.scalar(
            select(func.count()).select_from(ImportBatchItem).where(
                ImportBatchItem.batch_id == batch_id,
                ImportBatchItem.status == ItemStatus.FAILED.value,
                ImportBatchItem.retry_count < max_retries,
            )
        )

        status = BatchStatus(batch.status)
        return BatchProgress(
            batch_id=batch.id,
            status=status,
            total_files=batch.total_files,
            processed_files=processed,
            successful_files=min(batch.successful_files, batch.total_files),
            failed_files=min(batch.failed_files, batch.total_files),
            duplicate_files=min(batch.duplicate_files, batch.total_files),
            remaining_files=remaining,
            completion_percentage=completion_percentage(processed, batch.total_files),
            estimated_completion_at=estimated,
            is_complete=status in (BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED),
            has_retryable_items=bool(retryable),
        )

    async def cancel_batch(self, db: AsyncSession, user_id: str, batch_id: str) -> ImportBatch:
        """
        Stop a batch: pending items become skipped, in-flight items finish normally.

        Raises:
            ValidationError: Batch already completed, failed or cancelled
        """
        batch = await self.get_batch(db, user_id, batch_id)
        if BatchStatus(batch.status) not in (BatchStatus.PENDING, BatchStatus.PROCESSING):
            raise ValidationError(f"Cannot cancel a {batch.status} import")

        result = await db.execute(
            update(ImportBatchItem)
            .where(
                ImportBatchItem.batch_id == batch_id,
                ImportBatchItem.status == ItemStatus.PENDING.value,
            )
            .values(status=ItemStatus.SKIPPED.value, processed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        skipped = result.rowcount

        batch.status = BatchStatus.CANCELLED.value
        batch.completed_at = utcnow()
        await db.commit()

        batch = await self.recompute_batch_stats(db, batch_id)
        await self.activity.batch_cancelled(db, batch_id, skipped)

        logger.info("import_batch_cancelled", batch_id=batch_id, skipped=skipped)
        return batch


def batch_to_dict(batch: ImportBatch) -> dict:
    """Plain dict view of a batch (API responses)"""
    return {
        "id": batch.id,
        "import_type": batch.import_type,
        "status": batch.status,
        "total_files": batch.total_files,
        "processed_files": min(batch.processed_files, batch.total_files),
        "successful_files": batch.successful_files,
        "failed_files": batch.failed_files,
        "duplicate_files": batch.duplicate_files,
        "created_at": batch.created_at,
        "started_at": batch.started_at,
        "completed_at": batch.completed_at,
    }


# Singleton instance
batch_tracker = BatchTracker()
