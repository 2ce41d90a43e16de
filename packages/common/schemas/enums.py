"""
Shared enumerations stored as plain strings in the database
"""
from enum import Enum


class CategoryType(str, Enum):
    """Who owns a category"""
    SYSTEM = "system"   # Seeded once, shared by all users
    USER = "user"       # Owned (and deletable) by its creator


class TransactionType(str, Enum):
    """Direction of money"""
    INCOME = "income"
    EXPENSE = "expense"


class UsageScope(str, Enum):
    """Where a category (or a user) applies"""
    PERSONAL = "personal"
    BUSINESS = "business"
    BOTH = "both"


class RuleField(str, Enum):
    """Transaction field a rule inspects"""
    MERCHANT_NAME = "merchant_name"
    DESCRIPTION = "description"


class RuleMatchType(str, Enum):
    """How a rule pattern is compared"""
    EXACT = "exact"
    CONTAINS = "contains"
    REGEX = "regex"


class BusinessType(str, Enum):
    BUSINESS = "business"
    CONTRACT = "contract"


class DocumentType(str, Enum):
    RECEIPT = "receipt"
    BANK_STATEMENT = "bank_statement"


class DocumentStatus(str, Enum):
    PROCESSING = "processing"
    EXTRACTED = "extracted"
    FAILED = "failed"


class TransactionSource(str, Enum):
    """Where a bank transaction came from"""
    STATEMENT = "statement"
    BANK_LINK = "bank_link"


class FileFormat(str, Enum):
    JPG = "jpg"
    PNG = "png"
    WEBP = "webp"
    GIF = "gif"
    PDF = "pdf"
    CSV = "csv"
    XLSX = "xlsx"
    XLS = "xls"


class ImportType(str, Enum):
    RECEIPTS = "receipts"
    BANK_STATEMENTS = "bank_statements"
    MIXED = "mixed"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


TERMINAL_ITEM_STATUSES = frozenset({
    ItemStatus.COMPLETED,
    ItemStatus.FAILED,
    ItemStatus.DUPLICATE,
    ItemStatus.SKIPPED,
})

TERMINAL_BATCH_STATUSES = frozenset({
    BatchStatus.COMPLETED,
    BatchStatus.FAILED,
    BatchStatus.CANCELLED,
})


class DuplicateMatchType(str, Enum):
    EXACT_IMAGE = "exact_image"
    MERCHANT_DATE_AMOUNT = "merchant_date_amount"
    MANUAL = "manual"


class ActivityEventType(str, Enum):
    """Batch activity timeline events"""
    BATCH_CREATED = "batch_created"
    FILE_UPLOADED = "file_uploaded"
    EXTRACTION_STARTED = "extraction_started"
    EXTRACTION_COMPLETED = "extraction_completed"
    CATEGORIZATION_COMPLETED = "categorization_completed"
    DUPLICATE_DETECTED = "duplicate_detected"
    ITEM_COMPLETED = "item_completed"
    ITEM_FAILED = "item_failed"
    ITEM_RETRIED = "item_retried"
    BATCH_COMPLETED = "batch_completed"
    BATCH_CANCELLED = "batch_cancelled"
