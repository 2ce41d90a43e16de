"""
Document Importer - extract, categorize, and persist one file

Creates the Document row first (so a later failure still leaves an audit
trail), then runs the extractor and turns its fields into a Receipt or a set
of BankTransactions, each categorized by the engine.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.config import get_settings
from packages.common.errors import ExtractionError
from packages.common.models import BankTransaction, Document, Receipt
from packages.common.schemas.enums import (
    DocumentStatus,
    DocumentType,
    TransactionSource,
    TransactionType,
)
from packages.domain.categorization.categorization_service import (
    CategorizationEngine,
    categorization_engine,
)
from packages.domain.categorization.schemas import (
    CategorizationContext,
    CategorizationResult,
    TransactionToCategorize,
)
from packages.domain.imports.duplicate_detector import (
    DuplicateDetector,
    compute_content_hash,
    duplicate_detector,
)
from packages.domain.imports.extraction import (
    DocumentExtractor,
    ExtractedReceipt,
    ExtractedStatement,
    ExtractionResult,
)
from packages.domain.imports.schemas import MIME_TYPES, JobPayload, resolve_document_type

logger = structlog.get_logger()


@dataclass
class ImportedDocument:
    """What the importer produced for one file"""
    document: Document
    content_hash: str
    confidence: float
    merchant_name: Optional[str] = None
    transaction_date: Optional[date] = None
    amount: Optional[Decimal] = None
    categorization_method: str = "none"
    category_name: Optional[str] = None
    transaction_count: int = 0
    skipped_lines: int = 0
    records: List[object] = field(default_factory=list)


class DocumentImporter:
    """Turns file bytes into stored, categorized records"""

    def __init__(
        self,
        extractor: DocumentExtractor,
        engine: Optional[CategorizationEngine] = None,
        detector: Optional[DuplicateDetector] = None,
    ):
        self.extractor = extractor
        self.engine = engine or categorization_engine
        self.detector = detector or duplicate_detector

    async def import_document(self, db: AsyncSession, payload: JobPayload, file_bytes: bytes) -> ImportedDocument:
        """
        Import one file.

        Args:
            db: Database session
            payload: Job payload for the batch item
            file_bytes: Raw file content

        Returns:
            ImportedDocument with the stored document and summary

        Raises:
            ExtractionError: Extraction failed or returned unusable fields
        """
        document_type = resolve_document_type(payload.import_type, payload.file_format)
        content_hash = compute_content_hash(file_bytes)

        document = Document(
            user_id=payload.user_id,
            document_type=document_type.value,
            file_format=payload.file_format.value,
            file_name=payload.file_name,
            file_url=payload.file_url,
            file_size_bytes=len(file_bytes),
            mime_type=MIME_TYPES.get(payload.file_format),
            content_hash=content_hash,
            status=DocumentStatus.PROCESSING.value,
            import_batch_id=payload.batch_id,
        )
        db.add(document)
        await db.commit()
        document_id = document.id

        try:
            extraction = await asyncio.wait_for(
                self.extractor.extract(file_bytes, document_type, payload.file_format),
                timeout=get_settings().extraction_timeout_seconds,
            )
        except asyncio.TimeoutError:
            await self._mark_failed(db, document_id)
            raise ExtractionError(f"Extraction timed out for {payload.file_name}")
        except Exception:
            await self._mark_failed(db, document_id)
            raise

        document.extracted_fields = extraction.fields
        document.extraction_confidence = extraction.confidence

        try:
            if document_type == DocumentType.RECEIPT:
                imported = await self._persist_receipt(db, payload, document, content_hash, extraction)
            else:
                imported = await self._persist_statement(db, payload, document, content_hash, extraction)
        except Exception:
            await db.rollback()
            await self._mark_failed(db, document_id)
            raise

        document.status = DocumentStatus.EXTRACTED.value
        await db.commit()

        logger.info("document_imported",
                    document_id=document.id,
                    document_type=document_type.value,
                    confidence=extraction.confidence,
                    transactions=imported.transaction_count,
                    skipped_lines=imported.skipped_lines)
        return imported

    async def _mark_failed(self, db: AsyncSession, document_id: str) -> None:
        # The session may have been rolled back; write by id.
        # Category creation commits mid-statement, so earlier lines can already be stored.
        for model in (BankTransaction, Receipt):
            await db.execute(
                delete(model)
                .where(model.document_id == document_id)
                .execution_options(synchronize_session=False)
            )
        await db.execute(
            update(Document)
            .where(Document.id == document_id)
            .values(status=DocumentStatus.FAILED.value)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    async def _persist_receipt(
        self,
        db: AsyncSession,
        payload: JobPayload,
        document: Document,
        content_hash: str,
        extraction: ExtractionResult,
    ) -> ImportedDocument:
        try:
            data = ExtractedReceipt.model_validate(extraction.fields)
        except PydanticValidationError as e:
            raise ExtractionError(f"Extracted receipt fields are invalid: {e.error_count()} error(s)")

        merchant = data.merchant_name.strip() if data.merchant_name else None
        context = await self.engine.build_context(
            db, payload.user_id, TransactionType.EXPENSE, payload.statement_type
        )
        result = await self.engine.categorize_with_ai(
            TransactionToCategorize(
                merchant_name=merchant,
                description=data.description,
                amount=data.total_amount or Decimal("0"),
                transaction_date=data.transaction_date,
                transaction_type=TransactionType.EXPENSE,
                currency=data.currency or payload.currency,
            ),
            context,
            db,
        )
        business_id = result.business_id or payload.default_business_id

        receipt = Receipt(
            user_id=payload.user_id,
            document_id=document.id,
            merchant_name=merchant,
            total_amount=data.total_amount,
            transaction_date=data.transaction_date,
            currency=(data.currency or payload.currency or context.user_preferences.currency),
            category_id=result.category_id,
            business_id=business_id,
            is_business_expense=bool(business_id) or bool(result.is_business_expense),
        )
        db.add(receipt)

        return ImportedDocument(
            document=document,
            content_hash=content_hash,
            confidence=extraction.confidence,
            merchant_name=merchant,
            transaction_date=data.transaction_date,
            amount=data.total_amount,
            categorization_method=result.method.value,
            category_name=result.category_name,
            transaction_count=1,
            records=[receipt],
        )

    async def _persist_statement(
        self,
        db: AsyncSession,
        payload: JobPayload,
        document: Document,
        content_hash: str,
        extraction: ExtractionResult,
    ) -> ImportedDocument:
        try:
            data = ExtractedStatement.model_validate(extraction.fields)
        except PydanticValidationError as e:
            raise ExtractionError(f"Extracted statement fields are invalid: {e.error_count()} error(s)")

        contexts: Dict[TransactionType, CategorizationContext] = {}
        records: List[BankTransaction] = []
        skipped = 0
        last: Optional[CategorizationResult] = None

        for line in data.transactions:
            if payload.date_range_start and line.transaction_date < payload.date_range_start:
                skipped += 1
                continue
            if payload.date_range_end and line.transaction_date > payload.date_range_end:
                skipped += 1
                continue

            merchant = (line.merchant_name or "").strip() or None
            if await self.detector.statement_line_exists(
                db, payload.user_id, line.transaction_date, line.amount, merchant,
                exclude_document_id=document.id,
            ):
                skipped += 1
                continue

            transaction_type = TransactionType.INCOME if line.amount > 0 else TransactionType.EXPENSE
            if transaction_type not in contexts:
                contexts[transaction_type] = await self.engine.build_context(
                    db, payload.user_id, transaction_type, payload.statement_type
                )
            context = contexts[transaction_type]

            result = await self.engine.categorize_with_ai(
                TransactionToCategorize(
                    merchant_name=merchant,
                    description=line.description,
                    amount=abs(line.amount),
                    transaction_date=line.transaction_date,
                    transaction_type=transaction_type,
                    currency=data.currency or payload.currency,
                ),
                context,
                db,
            )
            last = result

            transaction = BankTransaction(
                user_id=payload.user_id,
                document_id=document.id,
                source=TransactionSource.STATEMENT.value,
                merchant_name=merchant,
                description=line.description,
                amount=line.amount,
                transaction_date=line.transaction_date,
                currency=data.currency or payload.currency or context.user_preferences.currency,
                transaction_type=transaction_type.value,
                category_id=result.category_id,
                business_id=result.business_id or payload.default_business_id,
            )
            db.add(transaction)
            records.append(transaction)

        return ImportedDocument(
            document=document,
            content_hash=content_hash,
            confidence=extraction.confidence,
            categorization_method=last.method.value if last and len(records) == 1 else "mixed",
            category_name=last.category_name if last and len(records) == 1 else None,
            transaction_count=len(records),
            skipped_lines=skipped,
            records=records,
        )
