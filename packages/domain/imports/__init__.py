"""
Imports Module - bulk upload of receipts and bank statements

One batch per upload, one item (and one queued job) per file:
- BatchTracker: batch/item state and aggregate counters
- QueueSender: enqueue processBatchItem jobs
- JobProcessor: extract -> categorize -> persist -> duplicate check, per item
- DuplicateDetector: exact-bytes and merchant/date/amount matches
- ActivityLogger: append-only timeline per batch
"""

from packages.domain.imports.batch_tracker import BatchTracker, batch_tracker
from packages.domain.imports.import_service import ImportService, import_service
from packages.domain.imports.job_processor import JobProcessor
from packages.domain.imports.schemas import CreateBatchRequest, JobPayload, JobProcessingResult

__all__ = [
    'BatchTracker',
    'batch_tracker',
    'ImportService',
    'import_service',
    'JobProcessor',
    'CreateBatchRequest',
    'JobPayload',
    'JobProcessingResult',
]
