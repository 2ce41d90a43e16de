"""
Job Processor - processBatchItem

One job per batch item. Every failure is caught here and recorded on the
item, so a single bad file never affects its siblings or the batch's
ability to finish.

Flow:
1. Skip if the batch was cancelled
2. Claim the item (pending -> processing)
3. Fetch bytes, extract, categorize, persist
4. Duplicate check against the user's earlier documents
5. Mark the item completed / duplicate / failed and recompute the batch
"""
import time
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.errors import ProcessingError, describe_error
from packages.common.metrics import batch_item_duration, batch_items_processed
from packages.common.models import ImportBatch
from packages.common.schemas.enums import BatchStatus, ItemStatus
from packages.domain.imports.activity_logger import ActivityLogger, activity_logger
from packages.domain.imports.batch_tracker import BatchTracker, batch_tracker
from packages.domain.imports.document_importer import DocumentImporter
from packages.domain.imports.duplicate_detector import DuplicateDetector, duplicate_detector
from packages.domain.imports.extraction import DocumentExtractor
from packages.domain.imports.schemas import JobPayload, JobProcessingResult
from packages.domain.imports.storage import fetch_file_bytes

logger = structlog.get_logger()


class JobProcessor:
    """Runs the import pipeline for one batch item"""

    def __init__(
        self,
        extractor: DocumentExtractor,
        importer: Optional[DocumentImporter] = None,
        tracker: Optional[BatchTracker] = None,
        detector: Optional[DuplicateDetector] = None,
        activity: Optional[ActivityLogger] = None,
    ):
        self.detector = detector or duplicate_detector
        self.importer = importer or DocumentImporter(extractor, detector=self.detector)
        self.tracker = tracker or batch_tracker
        self.activity = activity or activity_logger

    async def process_batch_item(self, db: AsyncSession, payload: JobPayload) -> JobProcessingResult:
        """
        Process one item; never raises for pipeline failures.

        Args:
            db: Database session
            payload: Job payload sent by the queue

        Returns:
            JobProcessingResult describing the outcome
        """
        structlog.contextvars.bind_contextvars(
            batch_id=payload.batch_id,
            batch_item_id=payload.batch_item_id,
        )
        try:
            return await self._process(db, payload)
        finally:
            structlog.contextvars.unbind_contextvars("batch_id", "batch_item_id")

    async def _process(self, db: AsyncSession, payload: JobPayload) -> JobProcessingResult:
        batch = await db.get(ImportBatch, payload.batch_id, populate_existing=True)
        if batch is None:
            logger.warning("batch_item_orphaned")
            return JobProcessingResult(
                success=False,
                batch_item_id=payload.batch_item_id,
                error="Batch not found",
                error_code="BATCH_NOT_FOUND",
            )

        if batch.status == BatchStatus.CANCELLED.value:
            await self.tracker.mark_item_skipped(db, payload.batch_id, payload.batch_item_id)
            logger.info("batch_item_skipped_cancelled")
            return JobProcessingResult(
                success=False,
                batch_item_id=payload.batch_item_id,
                error="Batch was cancelled",
                error_code="BATCH_CANCELLED",
            )

        if not await self.tracker.mark_item_processing(db, payload.batch_id, payload.batch_item_id):
            logger.info("batch_item_not_pending")
            return JobProcessingResult(
                success=False,
                batch_item_id=payload.batch_item_id,
                error="Item is not pending",
                error_code="ITEM_NOT_PENDING",
            )

        started = time.monotonic()
        document_id = None
        try:
            await self.activity.extraction_started(db, payload.batch_id, payload.batch_item_id, payload.file_name)

            file_bytes = await fetch_file_bytes(payload.file_url)
            imported = await self.importer.import_document(db, payload, file_bytes)
            document_id = imported.document.id

            await self.activity.extraction_completed(
                db, payload.batch_id, payload.batch_item_id, payload.file_name, imported.confidence
            )
            await self.activity.categorization_completed(
                db, payload.batch_id, payload.batch_item_id,
                imported.categorization_method,
                imported.category_name,
                imported.transaction_count,
            )

            match = await self.detector.check_duplicate(
                db,
                payload.user_id,
                document_id,
                imported.content_hash,
                merchant_name=imported.merchant_name,
                transaction_date=imported.transaction_date,
                amount=imported.amount,
            )
        except Exception as e:
            await db.rollback()
            return await self._fail(db, payload, e, started, document_id)

        duration_ms = int((time.monotonic() - started) * 1000)
        batch_item_duration.observe(duration_ms / 1000)

        if match is not None:
            await self.detector.mark_document_excluded(db, document_id)
            await self.tracker.mark_item_duplicate(
                db, payload.batch_id, payload.batch_item_id,
                document_id=document_id,
                duplicate_of_document_id=match.document_id,
                match_type=match.match_type.value,
                confidence=match.confidence,
                duration_ms=duration_ms,
            )
            await self.activity.duplicate_detected(
                db, payload.batch_id, payload.batch_item_id, payload.file_name,
                match.document_id, match.match_type.value,
            )
            batch_items_processed.labels(status=ItemStatus.DUPLICATE.value).inc()
            logger.info("batch_item_duplicate",
                        document_id=document_id,
                        duplicate_of=match.document_id,
                        match_type=match.match_type.value)
            return JobProcessingResult(
                success=True,
                batch_item_id=payload.batch_item_id,
                document_id=document_id,
                is_duplicate=True,
                duplicate_of_document_id=match.document_id,
            )

        await self.tracker.mark_item_completed(
            db, payload.batch_id, payload.batch_item_id, document_id, duration_ms
        )
        await self.activity.item_completed(db, payload.batch_id, payload.batch_item_id, payload.file_name, duration_ms)
        batch_items_processed.labels(status=ItemStatus.COMPLETED.value).inc()
        logger.info("batch_item_completed", document_id=document_id, duration_ms=duration_ms)

        return JobProcessingResult(
            success=True,
            batch_item_id=payload.batch_item_id,
            document_id=document_id,
        )

    async def _fail(
        self,
        db: AsyncSession,
        payload: JobPayload,
        error: Exception,
        started: float,
        document_id: Optional[str],
    ) -> JobProcessingResult:
        message = describe_error(error)
        code = ProcessingError.code
        duration_ms = int((time.monotonic() - started) * 1000)

        logger.error("batch_item_failed",
                     error=message,
                     error_code=code,
                     error_type=type(error).__name__,
                     duration_ms=duration_ms)

        await self.tracker.mark_item_failed(
            db, payload.batch_id, payload.batch_item_id,
            error_message=message,
            error_code=code,
            duration_ms=duration_ms,
            document_id=document_id,
        )
        await self.activity.item_failed(db, payload.batch_id, payload.batch_item_id, payload.file_name, message)
        batch_items_processed.labels(status=ItemStatus.FAILED.value).inc()
        batch_item_duration.observe(duration_ms / 1000)

        return JobProcessingResult(
            success=False,
            batch_item_id=payload.batch_item_id,
            document_id=document_id,
            error=message,
            error_code=code,
        )
