"""Tests for processing batch items end to end (queue payload -> stored records)."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from packages.common.errors import ExtractionError
from packages.common.models import BankTransaction, BatchActivityLog, Document, Receipt
from packages.common.schemas.enums import (
    ActivityEventType,
    BatchStatus,
    DocumentStatus,
    ImportType,
    ItemStatus,
    TransactionSource,
)
from packages.domain.categorization.schemas import CategorizationResult
from packages.domain.imports.batch_tracker import batch_tracker
from packages.domain.imports.document_importer import DocumentImporter
from packages.domain.imports.extraction import ExtractionResult
from packages.domain.imports.import_service import ImportService
from packages.domain.imports.job_processor import JobProcessor
from packages.domain.imports.queue_sender import QueueSender
from packages.domain.imports.schemas import CreateBatchRequest, JobPayload, UploadedFile
from packages.domain.imports.storage import user_upload_dir
from tests.conftest import USER_ID, FakeExtractor, RecordingQueueClient, receipt_fields


@pytest.fixture
def queue_client():
    return RecordingQueueClient()


@pytest.fixture
def service(queue_client, tmp_path):
    return ImportService(sender=QueueSender(client=queue_client), storage_root=str(tmp_path))


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def processor(extractor, deterministic_engine):
    return JobProcessor(
        extractor=extractor,
        importer=DocumentImporter(extractor, engine=deterministic_engine),
    )


def write_file(tmp_path, name, data):
    path = user_upload_dir(USER_ID, str(tmp_path)) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return UploadedFile(file_name=name, file_url=path.as_uri(), file_size_bytes=len(data))


async def start(db, service, files, import_type=ImportType.RECEIPTS, **kwargs):
    batch, _ = await service.start_batch_import(
        db, USER_ID, CreateBatchRequest(import_type=import_type, files=files, **kwargs)
    )
    return batch.id


async def run_all(db, processor, queue_client, start_at=0):
    results = []
    for sent in queue_client.sent[start_at:]:
        payload = JobPayload.model_validate(sent["payload"])
        results.append(await processor.process_batch_item(db, payload))
    return results


async def test_one_bad_file_does_not_affect_the_batch(db, tmp_path, service, processor, extractor, queue_client):
    files = []
    for i in range(5):
        data = f"receipt-{i}".encode()
        files.append(write_file(tmp_path, f"receipt-{i}.jpg", data))
        extractor.outcomes[data] = ExtractionResult(
            fields=receipt_fields(f"Store {i}", f"2026-09-0{i + 1}", f"1{i}.50"),
            confidence=0.9,
        )
    extractor.outcomes[b"receipt-2"] = RuntimeError("corrupt image")
    batch_id = await start(db, service, files)

    results = await run_all(db, processor, queue_client)

    assert [r.success for r in results] == [True, True, False, True, True]
    assert results[2].error == "corrupt image"
    assert results[2].error_code == "PROCESSING_ERROR"

    batch = await batch_tracker.get_batch(db, USER_ID, batch_id)
    assert batch.status == BatchStatus.COMPLETED.value
    assert batch.processed_files == 5
    assert batch.successful_files == 4
    assert batch.failed_files == 1

    items = await batch_tracker.list_items(db, USER_ID, batch_id)
    assert items[2].status == ItemStatus.FAILED.value
    assert items[2].error_message == "corrupt image"
    assert all(i.document_id for i in items if i.status == ItemStatus.COMPLETED.value)

    receipts = (await db.execute(select(Receipt))).scalars().all()
    assert len(receipts) == 4

    failed_docs = (await db.execute(
        select(Document).where(Document.status == DocumentStatus.FAILED.value)
    )).scalars().all()
    assert len(failed_docs) == 1


async def test_activity_timeline(db, tmp_path, service, processor, extractor, queue_client):
    extractor.outcomes[b"good"] = ExtractionResult(fields=receipt_fields("Cafe", "2026-09-01", "4.00"), confidence=0.8)
    extractor.outcomes[b"bad"] = ExtractionError("unreadable")
    batch_id = await start(db, service, [
        write_file(tmp_path, "good.jpg", b"good"),
        write_file(tmp_path, "bad.jpg", b"bad"),
    ])

    await run_all(db, processor, queue_client)

    events = [e.event_type for e in await service.list_activity(db, USER_ID, batch_id)]
    assert events[:3] == [
        ActivityEventType.BATCH_CREATED.value,
        ActivityEventType.FILE_UPLOADED.value,
        ActivityEventType.FILE_UPLOADED.value,
    ]
    assert ActivityEventType.ITEM_COMPLETED.value in events
    assert ActivityEventType.ITEM_FAILED.value in events
    assert ActivityEventType.BATCH_COMPLETED.value in events

    newest = (await service.list_activity(db, USER_ID, batch_id))[-2].id
    assert len(await service.list_activity(db, USER_ID, batch_id, after_id=newest)) == 1


async def test_exact_duplicate_is_flagged(db, tmp_path, service, processor, extractor, queue_client):
    extractor.outcomes[b"same bytes"] = ExtractionResult(
        fields=receipt_fields("Cafe", "2026-09-01", "4.00"), confidence=0.9
    )
    batch_id = await start(db, service, [
        write_file(tmp_path, "first.jpg", b"same bytes"),
        write_file(tmp_path, "copy.jpg", b"same bytes"),
    ])

    first, second = await run_all(db, processor, queue_client)

    assert first.is_duplicate is False
    assert second.success is True
    assert second.is_duplicate is True
    assert second.duplicate_of_document_id == first.document_id

    batch = await batch_tracker.get_batch(db, USER_ID, batch_id)
    assert batch.status == BatchStatus.COMPLETED.value
    assert batch.successful_files == 1
    assert batch.duplicate_files == 1

    items = await batch_tracker.list_items(db, USER_ID, batch_id)
    assert items[1].duplicate_match_type == "exact_image"
    assert items[1].duplicate_confidence == 1.0

    duplicate_doc = await db.get(Document, second.document_id, populate_existing=True)
    assert duplicate_doc.is_excluded_from_totals is True
    receipt = (await db.execute(
        select(Receipt)
        .where(Receipt.document_id == second.document_id)
        .execution_options(populate_existing=True)
    )).scalar_one()
    assert receipt.is_excluded_from_totals is True


async def test_same_receipt_photographed_twice(db, tmp_path, service, processor, extractor, queue_client):
    extractor.outcomes[b"photo one"] = ExtractionResult(
        fields=receipt_fields("Corner Cafe", "2026-09-01", "12.50"), confidence=0.9
    )
    extractor.outcomes[b"photo two"] = ExtractionResult(
        fields=receipt_fields("CORNER CAFE", "2026-09-01", "12.50"), confidence=0.7
    )
    await start(db, service, [
        write_file(tmp_path, "one.jpg", b"photo one"),
        write_file(tmp_path, "two.jpg", b"photo two"),
    ])

    _, second = await run_all(db, processor, queue_client)

    assert second.is_duplicate is True


async def test_cancelled_batch_items_are_skipped(db, tmp_path, service, processor, extractor, queue_client):
    batch_id = await start(db, service, [
        write_file(tmp_path, "a.jpg", b"a"),
        write_file(tmp_path, "b.jpg", b"b"),
    ])
    await service.cancel_batch(db, USER_ID, batch_id)

    results = await run_all(db, processor, queue_client)

    assert [r.error_code for r in results] == ["BATCH_CANCELLED", "BATCH_CANCELLED"]
    assert extractor.calls == []
    batch = await batch_tracker.get_batch(db, USER_ID, batch_id)
    assert batch.status == BatchStatus.CANCELLED.value
    assert batch.processed_files == 2


async def test_redelivered_job_is_ignored(db, tmp_path, service, processor, extractor, queue_client):
    extractor.outcomes[b"a"] = ExtractionResult(fields=receipt_fields("Cafe", "2026-09-01", "4.00"), confidence=0.9)
    await start(db, service, [write_file(tmp_path, "a.jpg", b"a")])
    payload = JobPayload.model_validate(queue_client.sent[0]["payload"])

    first = await processor.process_batch_item(db, payload)
    again = await processor.process_batch_item(db, payload)

    assert first.success is True
    assert again.success is False
    assert again.error_code == "ITEM_NOT_PENDING"
    assert len(extractor.calls) == 1


async def test_orphaned_job(db, processor):
    payload = JobPayload(
        batch_id="missing",
        batch_item_id="missing-item",
        file_url="file:///nowhere.jpg",
        file_name="nowhere.jpg",
        file_format="jpg",
        user_id=USER_ID,
        import_type=ImportType.RECEIPTS,
    )

    result = await processor.process_batch_item(db, payload)

    assert result.error_code == "BATCH_NOT_FOUND"


async def test_missing_file_fails_the_item(db, tmp_path, service, processor, queue_client):
    batch_id = await start(db, service, [
        UploadedFile(file_name="gone.jpg", file_url=(user_upload_dir(USER_ID, str(tmp_path)) / "gone.jpg").as_uri()),
    ])

    [result] = await run_all(db, processor, queue_client)

    assert result.success is False
    assert "gone.jpg" in result.error
    batch = await batch_tracker.get_batch(db, USER_ID, batch_id)
    assert batch.status == BatchStatus.FAILED.value


async def test_retried_item_is_not_a_duplicate_of_its_failed_attempt(
    db, tmp_path, service, processor, extractor, queue_client
):
    extractor.outcomes[b"flaky"] = ExtractionError("provider timeout")
    batch_id = await start(db, service, [write_file(tmp_path, "flaky.jpg", b"flaky")])
    [failed] = await run_all(db, processor, queue_client)
    assert failed.success is False

    extractor.outcomes[b"flaky"] = ExtractionResult(
        fields=receipt_fields("Cafe", "2026-09-01", "4.00"), confidence=0.9
    )
    items = await batch_tracker.list_items(db, USER_ID, batch_id)
    await service.retry_item(db, USER_ID, items[0].id)
    [retried] = await run_all(db, processor, queue_client, start_at=1)

    assert retried.success is True
    assert retried.is_duplicate is False
    batch = await batch_tracker.get_batch(db, USER_ID, batch_id)
    assert batch.status == BatchStatus.COMPLETED.value
    assert batch.completed_at is not None


async def test_statement_lines_become_bank_transactions(
    db, tmp_path, service, processor, extractor, queue_client
):
    statement = {
        "account_name": "Chequing",
        "currency": "CAD",
        "confidence": 0.95,
        "transactions": [
            {"transaction_date": "2026-08-31", "description": "LAST MONTH", "merchant_name": None, "amount": "-1.00"},
            {"transaction_date": "2026-09-01", "description": "PAYROLL ACME", "merchant_name": "Acme", "amount": "2500.00"},
            {"transaction_date": "2026-09-03", "description": "SOBEYS #123", "merchant_name": "Sobeys", "amount": "-45.10"},
            {"transaction_date": "2026-09-03", "description": "SOBEYS #123", "merchant_name": "Sobeys", "amount": "-45.10"},
        ],
    }
    extractor.outcomes[b"date,description,amount"] = ExtractionResult(fields=statement, confidence=0.95)
    await start(
        db, service, [write_file(tmp_path, "september.csv", b"date,description,amount")],
        import_type=ImportType.BANK_STATEMENTS,
        date_range_start="2026-09-01",
        date_range_end="2026-09-30",
    )

    [result] = await run_all(db, processor, queue_client)

    assert result.success is True
    rows = (await db.execute(
        select(BankTransaction).order_by(BankTransaction.transaction_date)
    )).scalars().all()
    assert [(r.merchant_name, r.amount, r.transaction_type) for r in rows] == [
        ("Acme", Decimal("2500.00"), "income"),
        ("Sobeys", Decimal("-45.10"), "expense"),
        ("Sobeys", Decimal("-45.10"), "expense"),
    ]
    assert all(r.source == TransactionSource.STATEMENT.value for r in rows)
    assert all(r.currency == "CAD" for r in rows)

    categorized = (await db.execute(
        select(BatchActivityLog).where(
            BatchActivityLog.event_type == ActivityEventType.CATEGORIZATION_COMPLETED.value
        )
    )).scalar_one()
    assert categorized.details["transaction_count"] == 3


def statement_lines(*lines):
    return {
        "account_name": "Chequing",
        "currency": "CAD",
        "confidence": 0.95,
        "transactions": [
            {"transaction_date": day, "description": merchant.upper(), "merchant_name": merchant, "amount": amount}
            for day, merchant, amount in lines
        ],
    }


async def test_identical_lines_in_one_statement_are_all_kept(
    db, tmp_path, service, processor, extractor, queue_client
):
    coffee = ("2026-09-05", "Tim Hortons", "-2.10")
    extractor.outcomes[b"two coffees"] = ExtractionResult(fields=statement_lines(coffee, coffee), confidence=0.95)
    await start(
        db, service, [write_file(tmp_path, "coffee.csv", b"two coffees")],
        import_type=ImportType.BANK_STATEMENTS,
    )

    [result] = await run_all(db, processor, queue_client)

    assert result.success is True
    amounts = (await db.execute(select(BankTransaction.amount))).scalars().all()
    assert amounts == [Decimal("-2.10"), Decimal("-2.10")]


async def test_lines_from_an_earlier_statement_are_skipped(
    db, tmp_path, service, processor, extractor, queue_client
):
    coffee = ("2026-09-05", "Tim Hortons", "-2.10")
    rent = ("2026-09-30", "Landlord", "-1200.00")
    extractor.outcomes[b"august"] = ExtractionResult(fields=statement_lines(coffee, coffee), confidence=0.95)
    extractor.outcomes[b"september"] = ExtractionResult(fields=statement_lines(coffee, rent), confidence=0.95)
    await start(
        db, service, [write_file(tmp_path, "august.csv", b"august")],
        import_type=ImportType.BANK_STATEMENTS,
    )
    await run_all(db, processor, queue_client)
    await start(
        db, service, [write_file(tmp_path, "september.csv", b"september")],
        import_type=ImportType.BANK_STATEMENTS,
    )

    [result] = await run_all(db, processor, queue_client, start_at=1)

    assert result.success is True
    rows = (await db.execute(
        select(BankTransaction.merchant_name).order_by(BankTransaction.transaction_date)
    )).scalars().all()
    assert rows == ["Tim Hortons", "Tim Hortons", "Landlord"]


async def test_mixed_batch_routes_by_format(db, tmp_path, service, processor, extractor, queue_client):
    extractor.outcomes[b"img"] = ExtractionResult(fields=receipt_fields("Cafe", "2026-09-01", "4.00"), confidence=0.9)
    extractor.outcomes[b"csv"] = ExtractionResult(
        fields={"confidence": 0.9, "transactions": []}, confidence=0.9
    )
    await start(db, service, [
        write_file(tmp_path, "receipt.png", b"img"),
        write_file(tmp_path, "statement.csv", b"csv"),
    ], import_type=ImportType.MIXED)

    await run_all(db, processor, queue_client)

    assert [call[1].value for call in extractor.calls] == ["receipt", "bank_statement"]


async def test_invalid_extracted_fields_fail_the_item(db, tmp_path, service, processor, extractor, queue_client):
    extractor.outcomes[b"weird"] = ExtractionResult(
        fields={"merchant_name": "Cafe", "confidence": 0.9, "tip_jar": True}, confidence=0.9
    )
    await start(db, service, [write_file(tmp_path, "weird.jpg", b"weird")])

    [result] = await run_all(db, processor, queue_client)

    assert result.success is False
    assert result.error_code == "PROCESSING_ERROR"
    assert "invalid" in result.error


class CommitThenCrashEngine:
    """Commits on the second categorization (as category creation does), then fails."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    async def build_context(self, *args, **kwargs):
        return await self.inner.build_context(*args, **kwargs)

    async def categorize_with_ai(self, transaction, context, db):
        self.calls += 1
        if self.calls == 1:
            return CategorizationResult.none()
        await db.commit()
        raise RuntimeError("categorizer crashed")


async def test_failed_statement_leaves_no_partial_transactions(
    db, tmp_path, service, extractor, queue_client, deterministic_engine
):
    engine = CommitThenCrashEngine(deterministic_engine)
    processor = JobProcessor(extractor=extractor, importer=DocumentImporter(extractor, engine=engine))
    statement = statement_lines(
        ("2026-09-05", "Tim Hortons", "-2.10"),
        ("2026-09-06", "Sobeys", "-45.10"),
    )
    extractor.outcomes[b"crashes midway"] = ExtractionResult(fields=statement, confidence=0.95)
    await start(
        db, service, [write_file(tmp_path, "midway.csv", b"crashes midway")],
        import_type=ImportType.BANK_STATEMENTS,
    )

    [result] = await run_all(db, processor, queue_client)

    assert result.success is False
    assert engine.calls == 2
    assert (await db.execute(select(BankTransaction))).scalars().all() == []
    statuses = (await db.execute(select(Document.status))).scalars().all()
    assert statuses == [DocumentStatus.FAILED.value]
