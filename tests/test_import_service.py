"""Tests for batch creation, enqueueing, uploads and retries."""

from pathlib import Path
from urllib.parse import urlparse

import pytest
from sqlalchemy import func, select, update

from packages.common.errors import AuthorizationError, DuplicateFileError, ValidationError
from packages.common.models import Document, ImportBatch, ImportBatchItem
from packages.common.schemas.enums import BatchStatus, FileFormat, ImportType, ItemStatus
from packages.domain.imports.batch_tracker import batch_tracker
from packages.domain.imports.duplicate_detector import compute_content_hash
from packages.domain.imports.import_service import ENQUEUE_FAILED, ImportService
from packages.domain.imports.queue_sender import IMPORTS_QUEUE, PROCESS_ITEM_TASK, QueueSender
from packages.domain.imports.schemas import CreateBatchRequest, JobPayload, UploadedFile
from packages.domain.imports.storage import user_upload_dir
from tests.conftest import OTHER_USER_ID, USER_ID, RecordingQueueClient


STORAGE_ROOT = "/srv/tallybook/uploads"


def upload_url(name, user_id=USER_ID):
    return (user_upload_dir(user_id, STORAGE_ROOT) / name).as_uri()


def make_request(*names, **kwargs):
    return CreateBatchRequest(
        import_type=kwargs.pop("import_type", ImportType.RECEIPTS),
        files=[UploadedFile(file_name=n, file_url=upload_url(n)) for n in names],
        **kwargs,
    )


def service_with(client):
    return ImportService(sender=QueueSender(client=client), storage_root=STORAGE_ROOT)


async def test_start_batch_enqueues_one_job_per_file(db):
    client = RecordingQueueClient()
    service = service_with(client)

    batch, summary = await service.start_batch_import(
        db, USER_ID, make_request("a.jpg", "b.pdf", currency="cad")
    )

    assert summary.success is True
    assert summary.enqueued == 2
    assert [s["name"] for s in client.sent] == [PROCESS_ITEM_TASK, PROCESS_ITEM_TASK]
    assert all(s["queue"] == IMPORTS_QUEUE for s in client.sent)

    payload = client.sent[1]["payload"]
    assert payload["batch_id"] == batch.id
    assert payload["user_id"] == USER_ID
    assert payload["file_format"] == "pdf"
    assert payload["currency"] == "CAD"
    assert payload["order"] == 1


async def test_enqueue_failure_marks_item_failed(db):
    service = service_with(RecordingQueueClient(fail_on={"b.jpg"}))

    batch, summary = await service.start_batch_import(db, USER_ID, make_request("a.jpg", "b.jpg"))

    assert summary.success is False
    assert summary.enqueued == 1
    assert summary.failed == 1
    assert "broker unavailable" in summary.errors[0]
    items = await batch_tracker.list_items(db, USER_ID, batch.id)
    assert items[1].status == ItemStatus.FAILED.value
    assert items[1].error_code == ENQUEUE_FAILED
    assert batch.status == BatchStatus.PROCESSING.value


async def test_all_enqueues_failing_fails_the_batch(db):
    service = service_with(RecordingQueueClient(fail_on={"a.jpg"}))

    batch, _ = await service.start_batch_import(db, USER_ID, make_request("a.jpg"))

    assert batch.status == BatchStatus.FAILED.value


@pytest.mark.parametrize("file_url", [
    "file:///etc/passwd",
    "file:///srv/tallybook/uploads/bob_example.com/ab/receipt.jpg",
    "file:///srv/tallybook/uploads/alice_example.com/../bob_example.com/receipt.jpg",
    "/srv/tallybook/uploads/alice_example.com/receipt.jpg",
    "http://169.254.169.254/latest/meta-data/",
])
async def test_files_outside_own_uploads_are_refused(db, file_url):
    client = RecordingQueueClient()
    service = service_with(client)
    request = CreateBatchRequest(
        import_type=ImportType.RECEIPTS,
        files=[
            UploadedFile(file_name="mine.jpg", file_url=upload_url("mine.jpg")),
            UploadedFile(file_name="foreign.jpg", file_url=file_url),
        ],
    )

    with pytest.raises(AuthorizationError):
        await service.start_batch_import(db, USER_ID, request)

    assert client.sent == []
    assert await db.scalar(select(func.count()).select_from(ImportBatch)) == 0


async def test_own_upload_url_from_upload_file_is_accepted(db, tmp_path):
    client = RecordingQueueClient()
    service = ImportService(sender=QueueSender(client=client), storage_root=str(tmp_path))
    uploaded = await service.upload_file(db, USER_ID, "lunch.jpg", b"jpeg bytes")

    batch, summary = await service.start_batch_import(
        db, USER_ID, CreateBatchRequest(import_type=ImportType.RECEIPTS, files=[uploaded])
    )

    assert summary.enqueued == 1
    assert client.sent[0]["payload"]["file_url"] == uploaded.file_url
    # The same file is not importable by someone else
    with pytest.raises(AuthorizationError):
        await service.start_batch_import(
            db, OTHER_USER_ID, CreateBatchRequest(import_type=ImportType.RECEIPTS, files=[uploaded])
        )


def job(name, item_id):
    return JobPayload(
        batch_id="batch-1",
        batch_item_id=item_id,
        file_url=upload_url(name),
        file_name=name,
        file_format=FileFormat.JPG,
        user_id=USER_ID,
        import_type=ImportType.RECEIPTS,
    )


def test_enqueue_batch_reports_partial_failure():
    client = RecordingQueueClient(fail_on={"b.jpg"})
    sender = QueueSender(client=client)

    result = sender.enqueue_batch([job("a.jpg", "item-a"), job("b.jpg", "item-b"), job("c.jpg", "item-c")])

    assert result.success is False
    assert (result.enqueued, result.failed) == (2, 1)
    assert result.errors[0].startswith("b.jpg: ")
    assert list(result.failed_items) == ["item-b"]
    assert [s["payload"]["batch_item_id"] for s in client.sent] == ["item-a", "item-c"]


def test_enqueue_batch_all_sent():
    sender = QueueSender(client=RecordingQueueClient())

    result = sender.enqueue_batch([job("a.jpg", "item-a")])

    assert result.success is True
    assert result.enqueued == 1
    assert result.errors == []
    assert result.failed_items == {}


async def fail_item(db, batch_id, item_id):
    await batch_tracker.mark_item_processing(db, batch_id, item_id)
    await batch_tracker.mark_item_failed(db, batch_id, item_id, "unreadable")


async def test_retry_item(db):
    client = RecordingQueueClient()
    service = service_with(client)
    batch, _ = await service.start_batch_import(db, USER_ID, make_request("a.jpg"))
    items = await batch_tracker.list_items(db, USER_ID, batch.id)
    await fail_item(db, batch.id, items[0].id)

    item = await service.retry_item(db, USER_ID, items[0].id)

    assert item.status == ItemStatus.PENDING.value
    assert item.retry_count == 1
    assert len(client.sent) == 2
    assert client.sent[1]["payload"]["batch_item_id"] == item.id


async def test_only_failed_items_can_be_retried(db):
    service = service_with(RecordingQueueClient())
    batch, _ = await service.start_batch_import(db, USER_ID, make_request("a.jpg"))
    items = await batch_tracker.list_items(db, USER_ID, batch.id)

    with pytest.raises(ValidationError):
        await service.retry_item(db, USER_ID, items[0].id)


async def test_retry_limit(db):
    service = service_with(RecordingQueueClient())
    batch, _ = await service.start_batch_import(db, USER_ID, make_request("a.jpg"))
    items = await batch_tracker.list_items(db, USER_ID, batch.id)
    await fail_item(db, batch.id, items[0].id)
    await db.execute(
        update(ImportBatchItem).where(ImportBatchItem.id == items[0].id).values(retry_count=3)
    )
    await db.commit()

    with pytest.raises(ValidationError, match="Retry limit"):
        await service.retry_item(db, USER_ID, items[0].id)


async def test_no_retry_in_cancelled_batch(db):
    service = service_with(RecordingQueueClient())
    batch, _ = await service.start_batch_import(db, USER_ID, make_request("a.jpg", "b.jpg"))
    items = await batch_tracker.list_items(db, USER_ID, batch.id)
    await fail_item(db, batch.id, items[0].id)
    await service.cancel_batch(db, USER_ID, batch.id)

    with pytest.raises(ValidationError, match="cancelled"):
        await service.retry_item(db, USER_ID, items[0].id)


async def test_retry_is_owner_only(db):
    service = service_with(RecordingQueueClient())
    batch, _ = await service.start_batch_import(db, USER_ID, make_request("a.jpg"))
    items = await batch_tracker.list_items(db, USER_ID, batch.id)
    await fail_item(db, batch.id, items[0].id)

    with pytest.raises(AuthorizationError):
        await service.retry_item(db, OTHER_USER_ID, items[0].id)


async def test_retry_enqueue_failure_leaves_item_failed(db):
    service = service_with(RecordingQueueClient(fail_on={"a.jpg"}))
    batch, _ = await service.start_batch_import(db, USER_ID, make_request("a.jpg"))
    items = await batch_tracker.list_items(db, USER_ID, batch.id)

    with pytest.raises(ValidationError):
        await service.retry_item(db, USER_ID, items[0].id)

    item, batch = await batch_tracker.get_item(db, USER_ID, items[0].id)
    assert item.status == ItemStatus.FAILED.value
    assert item.error_code == ENQUEUE_FAILED
    assert item.retry_count == 1
    assert batch.status == BatchStatus.FAILED.value


async def test_retry_all_failed(db):
    client = RecordingQueueClient()
    service = service_with(client)
    batch, _ = await service.start_batch_import(db, USER_ID, make_request("a.jpg", "b.jpg", "c.jpg"))
    items = await batch_tracker.list_items(db, USER_ID, batch.id)
    await fail_item(db, batch.id, items[0].id)
    await fail_item(db, batch.id, items[2].id)

    result = await service.retry_all_failed(db, USER_ID, batch.id)

    assert result.success is True
    assert result.retried_count == 2
    assert len(client.sent) == 5


async def test_retry_all_reports_partial_failure(db):
    service = service_with(RecordingQueueClient())
    batch, _ = await service.start_batch_import(db, USER_ID, make_request("a.jpg", "b.jpg"))
    items = await batch_tracker.list_items(db, USER_ID, batch.id)
    await fail_item(db, batch.id, items[0].id)
    await fail_item(db, batch.id, items[1].id)
    await db.execute(
        update(ImportBatchItem).where(ImportBatchItem.id == items[1].id).values(retry_count=3)
    )
    await db.commit()

    result = await service.retry_all_failed(db, USER_ID, batch.id)

    assert result.success is False
    assert result.retried_count == 1
    assert result.errors[0].startswith("b.jpg")


async def test_upload_file(db, tmp_path):
    service = service_with(RecordingQueueClient())

    uploaded = await service.upload_file(db, USER_ID, "lunch.jpg", b"jpeg bytes", storage_root=str(tmp_path))

    stored = Path(urlparse(uploaded.file_url).path)
    assert stored.read_bytes() == b"jpeg bytes"
    assert stored.suffix == ".jpg"
    assert uploaded.file_size_bytes == len(b"jpeg bytes")


async def test_upload_of_imported_file_is_rejected(db, tmp_path):
    service = service_with(RecordingQueueClient())
    db.add(Document(
        user_id=USER_ID,
        document_type="receipt",
        file_format="jpg",
        file_name="lunch.jpg",
        file_url=upload_url("lunch.jpg"),
        content_hash=compute_content_hash(b"jpeg bytes"),
        status="extracted",
    ))
    await db.commit()

    with pytest.raises(DuplicateFileError) as excinfo:
        await service.upload_file(db, USER_ID, "lunch-again.jpg", b"jpeg bytes", storage_root=str(tmp_path))
    assert excinfo.value.existing_document_id is not None

    # Another user may upload the same bytes
    await service.upload_file(db, OTHER_USER_ID, "lunch.jpg", b"jpeg bytes", storage_root=str(tmp_path))


async def test_empty_upload_is_rejected(db, tmp_path):
    service = service_with(RecordingQueueClient())

    with pytest.raises(ValidationError):
        await service.upload_file(db, USER_ID, "empty.jpg", b"", storage_root=str(tmp_path))


async def test_activity_requires_ownership(db):
    service = service_with(RecordingQueueClient())
    batch, _ = await service.start_batch_import(db, USER_ID, make_request("a.jpg"))

    with pytest.raises(AuthorizationError):
        await service.list_activity(db, OTHER_USER_ID, batch.id)
