"""SQLAlchemy models for the tallybook record store."""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from packages.common.database import Base
from packages.common.schemas.enums import (
    BatchStatus,
    CategoryType,
    DocumentStatus,
    ItemStatus,
    RuleField,
    RuleMatchType,
    TransactionSource,
    TransactionType,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Category(Base):
    """Spending/income category (system-seeded or user-owned)."""

    __tablename__ = "categories"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "type", "transaction_type", "normalized_name", name="uq_categories_owner_type_name"
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(120), nullable=False)
    normalized_name = Column(String(120), nullable=False)
    type = Column(String(16), nullable=False, default=CategoryType.USER.value)
    transaction_type = Column(String(16), nullable=False, default=TransactionType.EXPENSE.value)
    usage_scope = Column(String(16), nullable=True)
    user_id = Column(String(255), nullable=True, index=True)
    parent_id = Column(String(36), ForeignKey("categories.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class CategoryRule(Base):
    """User-defined pattern that maps a field value to a category."""

    __tablename__ = "category_rules"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(255), nullable=False, index=True)
    category_id = Column(String(36), ForeignKey("categories.id"), nullable=False)
    business_id = Column(String(36), nullable=True)  # no FK: businesses may be deleted
    field = Column(String(32), nullable=False, default=RuleField.MERCHANT_NAME.value)
    match_type = Column(String(16), nullable=False, default=RuleMatchType.CONTAINS.value)
    value = Column(String(255), nullable=False)
    display_name = Column(String(255), nullable=True)
    is_enabled = Column(Boolean, default=True, nullable=False)
    sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Business(Base):
    """Business or contract a transaction can be attributed to."""

    __tablename__ = "businesses"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(16), nullable=False)
    tax_id = Column(String(64), nullable=True)
    address = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class UserSettings(Base):
    """Per-user preferences used as categorization context."""

    __tablename__ = "user_settings"

    user_id = Column(String(255), primary_key=True)
    usage_type = Column(String(16), nullable=False, default="personal")
    country = Column(String(2), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")


class Document(Base):
    """Uploaded file and its extraction outcome."""

    __tablename__ = "documents"
    __table_args__ = (
        Index("ix_documents_user_content_hash", "user_id", "content_hash"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(255), nullable=False, index=True)
    document_type = Column(String(32), nullable=False)
    file_format = Column(String(8), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_url = Column(Text, nullable=False)
    file_size_bytes = Column(Integer, nullable=True)
    mime_type = Column(String(100), nullable=True)
    content_hash = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default=DocumentStatus.PROCESSING.value)
    import_batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=True)
    extraction_confidence = Column(Float, nullable=True)
    extracted_fields = Column(JSON, nullable=True)
    is_excluded_from_totals = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Receipt(Base):
    """Receipt transaction extracted from a document."""

    __tablename__ = "receipts"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(255), nullable=False, index=True)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=True)
    merchant_name = Column(String(255), nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=True)
    transaction_date = Column(Date, nullable=True)
    currency = Column(String(3), nullable=True)
    category_id = Column(String(36), ForeignKey("categories.id"), nullable=True)
    business_id = Column(String(36), nullable=True)  # dangling after business deletion by design
    is_business_expense = Column(Boolean, default=False, nullable=False)
    is_excluded_from_totals = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class BankTransaction(Base):
    """Bank transaction from a statement import or a bank link feed."""

    __tablename__ = "bank_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "source", "external_id", name="uq_bank_transactions_external"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(255), nullable=False, index=True)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=True)
    source = Column(String(16), nullable=False, default=TransactionSource.STATEMENT.value)
    external_id = Column(String(255), nullable=True)
    merchant_name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    transaction_date = Column(Date, nullable=False)
    currency = Column(String(3), nullable=True)
    transaction_type = Column(String(16), nullable=False, default=TransactionType.EXPENSE.value)
    category_id = Column(String(36), ForeignKey("categories.id"), nullable=True)
    business_id = Column(String(36), nullable=True)
    is_excluded_from_totals = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ImportBatch(Base):
    """One bulk upload of N files."""

    __tablename__ = "import_batches"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(255), nullable=False, index=True)
    import_type = Column(String(32), nullable=False)
    source_format = Column(String(32), nullable=True)
    statement_type = Column(String(32), nullable=True)
    currency = Column(String(3), nullable=True)
    default_business_id = Column(String(36), nullable=True)
    date_range_start = Column(Date, nullable=True)
    date_range_end = Column(Date, nullable=True)
    status = Column(String(16), nullable=False, default=BatchStatus.PENDING.value)
    total_files = Column(Integer, nullable=False, default=0)
    processed_files = Column(Integer, nullable=False, default=0)
    successful_files = Column(Integer, nullable=False, default=0)
    failed_files = Column(Integer, nullable=False, default=0)
    duplicate_files = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class ImportBatchItem(Base):
    """One file inside an import batch."""

    __tablename__ = "import_batch_items"

    id = Column(String(36), primary_key=True, default=new_id)
    batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    file_url = Column(Text, nullable=True)
    file_format = Column(String(8), nullable=False)
    file_size_bytes = Column(Integer, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default=ItemStatus.PENDING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    document_id = Column(String(36), nullable=True)
    duplicate_of_document_id = Column(String(36), nullable=True)
    duplicate_match_type = Column(String(32), nullable=True)
    duplicate_confidence = Column(Float, nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(64), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class BatchActivityLog(Base):
    """Append-only batch timeline entry."""

    __tablename__ = "batch_activity_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=False, index=True)
    batch_item_id = Column(String(36), nullable=True)
    event_type = Column(String(40), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
