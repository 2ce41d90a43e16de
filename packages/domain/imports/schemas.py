"""
Data schemas for the batch import pipeline
"""
from datetime import date, datetime
from pathlib import PurePosixPath
from typing import Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, model_validator

from packages.common.schemas.enums import (
    BatchStatus,
    DocumentType,
    FileFormat,
    ImportType,
)

_EXTENSION_FORMATS = {
    "jpg": FileFormat.JPG,
    "jpeg": FileFormat.JPG,
    "png": FileFormat.PNG,
    "webp": FileFormat.WEBP,
    "gif": FileFormat.GIF,
    "pdf": FileFormat.PDF,
    "csv": FileFormat.CSV,
    "xlsx": FileFormat.XLSX,
    "xls": FileFormat.XLS,
}

MIME_TYPES = {
    FileFormat.JPG: "image/jpeg",
    FileFormat.PNG: "image/png",
    FileFormat.WEBP: "image/webp",
    FileFormat.GIF: "image/gif",
    FileFormat.PDF: "application/pdf",
    FileFormat.CSV: "text/csv",
    FileFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    FileFormat.XLS: "application/vnd.ms-excel",
}

SPREADSHEET_FORMATS = frozenset({FileFormat.CSV, FileFormat.XLSX, FileFormat.XLS})


def detect_file_format(file_name: str) -> FileFormat:
    """Map a file name (or URL) extension to a FileFormat; unknown defaults to jpg"""
    path = urlparse(file_name).path if "://" in file_name else file_name
    suffix = PurePosixPath(path).suffix.lower().lstrip(".")
    return _EXTENSION_FORMATS.get(suffix, FileFormat.JPG)


def resolve_document_type(import_type: ImportType, file_format: FileFormat) -> DocumentType:
    """
    Decide the extraction path for one file.

    Mixed batches are auto-detected by format: spreadsheets are statements,
    everything else is a receipt.
    """
    import_type = ImportType(import_type)
    if import_type == ImportType.RECEIPTS:
        return DocumentType.RECEIPT
    if import_type == ImportType.BANK_STATEMENTS:
        return DocumentType.BANK_STATEMENT
    if FileFormat(file_format) in SPREADSHEET_FORMATS:
        return DocumentType.BANK_STATEMENT
    return DocumentType.RECEIPT


class UploadedFile(BaseModel):
    """One file in a batch creation request"""
    file_name: str = Field(..., min_length=1, max_length=255)
    file_url: str = Field(..., min_length=1)
    file_size_bytes: Optional[int] = Field(None, ge=0)


class CreateBatchRequest(BaseModel):
    """Bulk import request"""
    import_type: ImportType
    files: List[UploadedFile] = Field(..., min_length=1)
    source_format: Optional[str] = None
    statement_type: Optional[str] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    default_business_id: Optional[str] = None
    date_range_start: Optional[date] = None
    date_range_end: Optional[date] = None

    @model_validator(mode="after")
    def check_date_range(self) -> "CreateBatchRequest":
        if self.date_range_start and self.date_range_end and self.date_range_start > self.date_range_end:
            raise ValueError("date_range_start must not be after date_range_end")
        return self


class JobPayload(BaseModel):
    """Everything a worker needs to process one batch item"""
    batch_id: str
    batch_item_id: str
    file_url: str
    file_name: str
    file_format: FileFormat
    user_id: str
    import_type: ImportType
    source_format: Optional[str] = None
    statement_type: Optional[str] = None
    currency: Optional[str] = None
    default_business_id: Optional[str] = None
    date_range_start: Optional[date] = None
    date_range_end: Optional[date] = None
    order: int = 0


class JobProcessingResult(BaseModel):
    """Outcome of one processBatchItem run"""
    success: bool
    batch_item_id: str
    document_id: Optional[str] = None
    is_duplicate: bool = False
    duplicate_of_document_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class EnqueueResult(BaseModel):
    success: bool
    event_id: Optional[str] = None
    error: Optional[str] = None


class BatchEnqueueResult(BaseModel):
    success: bool
    enqueued: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    # batch_item_id -> broker error
    failed_items: Dict[str, str] = Field(default_factory=dict)


class RetryResult(BaseModel):
    success: bool
    retried_count: int = 0
    errors: List[str] = Field(default_factory=list)


class BatchProgress(BaseModel):
    """Clamped progress view for polling clients"""
    batch_id: str
    status: BatchStatus
    total_files: int
    processed_files: int
    successful_files: int
    failed_files: int
    duplicate_files: int
    remaining_files: int
    completion_percentage: float = Field(..., ge=0.0, le=100.0)
    estimated_completion_at: Optional[datetime] = None
    is_complete: bool
    has_retryable_items: bool
