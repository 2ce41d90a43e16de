"""
Activity Logger - append-only batch timeline

Entries are write-only from the pipeline's side and read by polling
clients. A failed write is logged and dropped; it never fails the item
being processed.
"""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.errors import describe_error
from packages.common.models import BatchActivityLog
from packages.common.schemas.enums import ActivityEventType

logger = structlog.get_logger()


class ActivityLogger:
    """Writes batch_activity_logs rows"""

    async def log_event(
        self,
        db: AsyncSession,
        batch_id: str,
        event_type: ActivityEventType,
        message: str,
        batch_item_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[BatchActivityLog]:
        """
        Append one event (committed immediately).

        Args:
            db: Database session with no pending work the caller still needs
            batch_id: Batch the event belongs to
            event_type: Event kind
            message: Human-readable timeline text
            batch_item_id: Item the event refers to, if any
            details: Extra JSON payload

        Returns:
            The stored entry, or None if the write failed
        """
        entry = BatchActivityLog(
            batch_id=batch_id,
            batch_item_id=batch_item_id,
            event_type=ActivityEventType(event_type).value,
            message=message,
            details=details or {},
        )
        try:
            db.add(entry)
            await db.commit()
        except Exception as e:
            logger.error("activity_log_write_failed",
                         batch_id=batch_id,
                         event_type=ActivityEventType(event_type).value,
                         error=describe_error(e))
            await db.rollback()
            return None
        return entry

    async def batch_created(self, db: AsyncSession, batch_id: str, total_files: int, import_type: str):
        return await self.log_event(
            db, batch_id, ActivityEventType.BATCH_CREATED,
            f"Import started with {total_files} file{'s' if total_files != 1 else ''}",
            details={"total_files": total_files, "import_type": import_type},
        )

    async def file_uploaded(self, db: AsyncSession, batch_id: str, batch_item_id: str, file_name: str):
        return await self.log_event(
            db, batch_id, ActivityEventType.FILE_UPLOADED,
            f"Uploaded {file_name}",
            batch_item_id=batch_item_id,
            details={"file_name": file_name},
        )

    async def extraction_started(self, db: AsyncSession, batch_id: str, batch_item_id: str, file_name: str):
        return await self.log_event(
            db, batch_id, ActivityEventType.EXTRACTION_STARTED,
            f"Reading {file_name}",
            batch_item_id=batch_item_id,
        )

    async def extraction_completed(
        self, db: AsyncSession, batch_id: str, batch_item_id: str, file_name: str, confidence: float
    ):
        return await self.log_event(
            db, batch_id, ActivityEventType.EXTRACTION_COMPLETED,
            f"Read {file_name} ({confidence:.0%} confidence)",
            batch_item_id=batch_item_id,
            details={"confidence": confidence},
        )

    async def categorization_completed(
        self,
        db: AsyncSession,
        batch_id: str,
        batch_item_id: str,
        method: str,
        category_name: Optional[str],
        transaction_count: int = 1,
    ):
        label = category_name or "Uncategorized"
        message = (
            f"Categorized as {label} ({method})"
            if transaction_count == 1
            else f"Categorized {transaction_count} transactions"
        )
        return await self.log_event(
            db, batch_id, ActivityEventType.CATEGORIZATION_COMPLETED,
            message,
            batch_item_id=batch_item_id,
            details={"method": method, "category_name": category_name, "transaction_count": transaction_count},
        )

    async def duplicate_detected(
        self,
        db: AsyncSession,
        batch_id: str,
        batch_item_id: str,
        file_name: str,
        duplicate_of_document_id: str,
        match_type: str,
    ):
        return await self.log_event(
            db, batch_id, ActivityEventType.DUPLICATE_DETECTED,
            f"{file_name} was already imported",
            batch_item_id=batch_item_id,
            details={"duplicate_of_document_id": duplicate_of_document_id, "match_type": match_type},
        )

    async def item_completed(
        self, db: AsyncSession, batch_id: str, batch_item_id: str, file_name: str, duration_ms: int
    ):
        return await self.log_event(
            db, batch_id, ActivityEventType.ITEM_COMPLETED,
            f"Finished {file_name} in {duration_ms / 1000:.1f}s",
            batch_item_id=batch_item_id,
            details={"duration_ms": duration_ms},
        )

    async def item_failed(self, db: AsyncSession, batch_id: str, batch_item_id: str, file_name: str, reason: str):
        return await self.log_event(
            db, batch_id, ActivityEventType.ITEM_FAILED,
            f"Failed to process {file_name}: {reason}",
            batch_item_id=batch_item_id,
            details={"reason": reason},
        )

    async def item_retried(
        self, db: AsyncSession, batch_id: str, batch_item_id: str, file_name: str, retry_count: int
    ):
        return await self.log_event(
            db, batch_id, ActivityEventType.ITEM_RETRIED,
            f"Retrying {file_name} (attempt {retry_count + 1})",
            batch_item_id=batch_item_id,
            details={"retry_count": retry_count},
        )

    async def batch_completed(self, db: AsyncSession, batch_id: str, status: str, counters: Dict[str, int]):
        return await self.log_event(
            db, batch_id, ActivityEventType.BATCH_COMPLETED,
            f"Import {status}: {counters.get('successful_files', 0)} imported, "
            f"{counters.get('duplicate_files', 0)} duplicates, {counters.get('failed_files', 0)} failed",
            details={"status": status, **counters},
        )

    async def batch_cancelled(self, db: AsyncSession, batch_id: str, skipped: int):
        return await self.log_event(
            db, batch_id, ActivityEventType.BATCH_CANCELLED,
            f"Import cancelled; {skipped} pending file{'s' if skipped != 1 else ''} skipped",
            details={"skipped": skipped},
        )

    async def list_events(
        self,
        db: AsyncSession,
        batch_id: str,
        after_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[BatchActivityLog]:
        """
        Timeline for a batch in append order (caller checks ownership).

        Args:
            after_id: Only entries newer than this id (polling cursor)
        """
        query = select(BatchActivityLog).where(BatchActivityLog.batch_id == batch_id)
        if after_id is not None:
            query = query.where(BatchActivityLog.id > after_id)
        query = query.order_by(BatchActivityLog.id).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())


# Singleton instance
activity_logger = ActivityLogger()
