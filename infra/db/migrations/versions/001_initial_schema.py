"""Initial schema for Tallybook

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def timestamps():
    return sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    # Categories (system rows have user_id NULL)
    op.create_table(
        'categories',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(120), nullable=False),
        sa.Column('normalized_name', sa.String(120), nullable=False),
        sa.Column('type', sa.String(16), nullable=False, server_default='user'),  # system, user
        sa.Column('transaction_type', sa.String(16), nullable=False, server_default='expense'),
        sa.Column('usage_scope', sa.String(16)),  # personal, business, both
        sa.Column('user_id', sa.String(255)),
        sa.Column('parent_id', sa.String(36), sa.ForeignKey('categories.id')),
        timestamps(),
    )
    op.create_unique_constraint(
        'uq_categories_owner_type_name', 'categories',
        ['user_id', 'type', 'transaction_type', 'normalized_name'],
    )
    op.create_index('ix_categories_user_id', 'categories', ['user_id'])
    # NULL user_id is distinct in a unique constraint; system names need their own guard
    op.create_index(
        'uq_categories_system_name', 'categories', ['normalized_name', 'transaction_type'],
        unique=True, postgresql_where=sa.text("type = 'system'"),
    )

    op.create_table(
        'category_rules',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('category_id', sa.String(36), sa.ForeignKey('categories.id'), nullable=False),
        sa.Column('business_id', sa.String(36)),  # no FK: businesses may be deleted
        sa.Column('field', sa.String(32), nullable=False, server_default='merchant_name'),
        sa.Column('match_type', sa.String(16), nullable=False, server_default='contains'),
        sa.Column('value', sa.String(255), nullable=False),
        sa.Column('display_name', sa.String(255)),
        sa.Column('is_enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('sequence', sa.Integer, nullable=False, server_default='0'),
        timestamps(),
    )
    op.create_index('ix_category_rules_user_id', 'category_rules', ['user_id'])

    op.create_table(
        'businesses',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('type', sa.String(16), nullable=False),  # business, contract
        sa.Column('tax_id', sa.String(64)),
        sa.Column('address', sa.Text),
        sa.Column('description', sa.Text),
        timestamps(),
    )
    op.create_index('ix_businesses_user_id', 'businesses', ['user_id'])

    op.create_table(
        'user_settings',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('usage_type', sa.String(16), nullable=False, server_default='personal'),
        sa.Column('country', sa.String(2)),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
    )

    # Import batches
    op.create_table(
        'import_batches',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('import_type', sa.String(32), nullable=False),  # receipts, bank_statements, mixed
        sa.Column('source_format', sa.String(32)),
        sa.Column('statement_type', sa.String(32)),
        sa.Column('currency', sa.String(3)),
        sa.Column('default_business_id', sa.String(36)),
        sa.Column('date_range_start', sa.Date),
        sa.Column('date_range_end', sa.Date),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('total_files', sa.Integer, nullable=False, server_default='0'),
        sa.Column('processed_files', sa.Integer, nullable=False, server_default='0'),
        sa.Column('successful_files', sa.Integer, nullable=False, server_default='0'),
        sa.Column('failed_files', sa.Integer, nullable=False, server_default='0'),
        sa.Column('duplicate_files', sa.Integer, nullable=False, server_default='0'),
        timestamps(),
        sa.Column('started_at', sa.TIMESTAMP(timezone=True)),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True)),
    )
    op.create_index('ix_import_batches_user_id', 'import_batches', ['user_id'])

    op.create_table(
        'import_batch_items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('batch_id', sa.String(36), sa.ForeignKey('import_batches.id'), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_url', sa.Text),
        sa.Column('file_format', sa.String(8), nullable=False),
        sa.Column('file_size_bytes', sa.Integer),
        sa.Column('sort_order', sa.Integer, nullable=False, server_default='0'),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('document_id', sa.String(36)),
        sa.Column('duplicate_of_document_id', sa.String(36)),
        sa.Column('duplicate_match_type', sa.String(32)),
        sa.Column('duplicate_confidence', sa.Float),
        sa.Column('error_message', sa.Text),
        sa.Column('error_code', sa.String(64)),
        sa.Column('started_at', sa.TIMESTAMP(timezone=True)),
        sa.Column('processed_at', sa.TIMESTAMP(timezone=True)),
        sa.Column('processing_duration_ms', sa.Integer),
        timestamps(),
    )
    op.create_index('ix_import_batch_items_batch_id', 'import_batch_items', ['batch_id'])

    op.create_table(
        'batch_activity_logs',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('batch_id', sa.String(36), sa.ForeignKey('import_batches.id'), nullable=False),
        sa.Column('batch_item_id', sa.String(36)),
        sa.Column('event_type', sa.String(40), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('details', sa.JSON),
        timestamps(),
    )
    op.create_index('ix_batch_activity_logs_batch_id', 'batch_activity_logs', ['batch_id'])

    # Documents and the records extracted from them
    op.create_table(
        'documents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('document_type', sa.String(32), nullable=False),
        sa.Column('file_format', sa.String(8), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_url', sa.Text, nullable=False),
        sa.Column('file_size_bytes', sa.Integer),
        sa.Column('mime_type', sa.String(100)),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='processing'),
        sa.Column('import_batch_id', sa.String(36), sa.ForeignKey('import_batches.id')),
        sa.Column('extraction_confidence', sa.Float),
        sa.Column('extracted_fields', sa.JSON),
        sa.Column('is_excluded_from_totals', sa.Boolean, nullable=False, server_default=sa.false()),
        timestamps(),
    )
    op.create_index('ix_documents_user_id', 'documents', ['user_id'])
    op.create_index('ix_documents_user_content_hash', 'documents', ['user_id', 'content_hash'])

    op.create_table(
        'receipts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('document_id', sa.String(36), sa.ForeignKey('documents.id')),
        sa.Column('merchant_name', sa.String(255)),
        sa.Column('total_amount', sa.Numeric(12, 2)),
        sa.Column('transaction_date', sa.Date),
        sa.Column('currency', sa.String(3)),
        sa.Column('category_id', sa.String(36), sa.ForeignKey('categories.id')),
        sa.Column('business_id', sa.String(36)),
        sa.Column('is_business_expense', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('is_excluded_from_totals', sa.Boolean, nullable=False, server_default=sa.false()),
        timestamps(),
    )
    op.create_index('ix_receipts_user_id', 'receipts', ['user_id'])
    op.create_index('ix_receipts_user_merchant', 'receipts', ['user_id', 'merchant_name'])

    op.create_table(
        'bank_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('document_id', sa.String(36), sa.ForeignKey('documents.id')),
        sa.Column('source', sa.String(16), nullable=False, server_default='statement'),  # statement, bank_link
        sa.Column('external_id', sa.String(255)),
        sa.Column('merchant_name', sa.String(255)),
        sa.Column('description', sa.Text),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('transaction_date', sa.Date, nullable=False),
        sa.Column('currency', sa.String(3)),
        sa.Column('transaction_type', sa.String(16), nullable=False, server_default='expense'),
        sa.Column('category_id', sa.String(36), sa.ForeignKey('categories.id')),
        sa.Column('business_id', sa.String(36)),
        sa.Column('is_excluded_from_totals', sa.Boolean, nullable=False, server_default=sa.false()),
        timestamps(),
    )
    op.create_unique_constraint(
        'uq_bank_transactions_external', 'bank_transactions', ['user_id', 'source', 'external_id']
    )
    op.create_index('ix_bank_transactions_user_id', 'bank_transactions', ['user_id'])
    op.create_index('ix_bank_transactions_user_merchant', 'bank_transactions', ['user_id', 'merchant_name'])


def downgrade():
    for table in (
        'bank_transactions',
        'receipts',
        'documents',
        'batch_activity_logs',
        'import_batch_items',
        'import_batches',
        'user_settings',
        'businesses',
        'category_rules',
        'categories',
    ):
        op.drop_table(table)
