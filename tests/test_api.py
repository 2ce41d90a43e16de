"""HTTP tests for the imports, categories and banking routers."""

import httpx
import pytest

from apps.api import main
from apps.api.routers import imports as imports_router
from packages.common.database import get_db_session
from packages.common.models import Document
from packages.domain.imports.duplicate_detector import compute_content_hash
from packages.domain.imports.queue_sender import QueueSender
from packages.domain.imports.storage import user_upload_dir
from tests.conftest import OTHER_USER_ID, USER_ID, RecordingQueueClient

HEADER = main.settings.identity_header


@pytest.fixture
def queue_client(monkeypatch):
    client = RecordingQueueClient()
    monkeypatch.setattr(imports_router.import_service, "sender", QueueSender(client=client))
    return client


@pytest.fixture
async def client(session_manager, system_categories, queue_client):
    async def override_session():
        async with session_manager.session() as session:
            yield session

    main.app.dependency_overrides[get_db_session] = override_session
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http
    main.app.dependency_overrides.clear()


def as_user(user_id):
    return {HEADER: user_id}


UPLOADS = user_upload_dir(USER_ID)

BATCH = {
    "import_type": "receipts",
    "files": [
        {"file_name": "lunch.jpg", "file_url": (UPLOADS / "lunch.jpg").as_uri()},
        {"file_name": "fuel.jpg", "file_url": (UPLOADS / "fuel.jpg").as_uri()},
    ],
}


async def test_requests_without_identity_are_rejected(client):
    response = await client.get("/api/v1/imports/batches")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHENTICATED"


async def test_create_batch(client, queue_client):
    response = await client.post("/api/v1/imports/batches", json=BATCH, headers=as_user(USER_ID))

    assert response.status_code == 202
    body = response.json()
    assert body["batch"]["total_files"] == 2
    assert body["batch"]["status"] == "pending"
    assert body["enqueue"]["enqueued"] == 2
    assert len(queue_client.sent) == 2


async def test_batch_with_foreign_file_is_forbidden(client, queue_client):
    request = {
        "import_type": "receipts",
        "files": [{"file_name": "passwd", "file_url": "file:///etc/passwd"}],
    }

    response = await client.post("/api/v1/imports/batches", json=request, headers=as_user(USER_ID))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "UNAUTHORIZED"
    assert queue_client.sent == []


async def test_another_users_upload_is_forbidden(client, queue_client):
    response = await client.post("/api/v1/imports/batches", json=BATCH, headers=as_user(OTHER_USER_ID))

    assert response.status_code == 403
    assert queue_client.sent == []


async def test_batch_of_another_user_is_forbidden(client):
    created = await client.post("/api/v1/imports/batches", json=BATCH, headers=as_user(USER_ID))
    batch_id = created.json()["batch"]["id"]

    response = await client.get(f"/api/v1/imports/batches/{batch_id}", headers=as_user(OTHER_USER_ID))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


async def test_progress_and_items(client):
    created = await client.post("/api/v1/imports/batches", json=BATCH, headers=as_user(USER_ID))
    batch_id = created.json()["batch"]["id"]

    progress = await client.get(f"/api/v1/imports/batches/{batch_id}/progress", headers=as_user(USER_ID))
    items = await client.get(f"/api/v1/imports/batches/{batch_id}/items", headers=as_user(USER_ID))

    assert progress.status_code == 200
    assert progress.json()["completion_percentage"] == 0.0
    assert [i["file_name"] for i in items.json()] == ["lunch.jpg", "fuel.jpg"]


async def test_cancel_twice_is_rejected(client):
    created = await client.post("/api/v1/imports/batches", json=BATCH, headers=as_user(USER_ID))
    batch_id = created.json()["batch"]["id"]

    first = await client.post(f"/api/v1/imports/batches/{batch_id}/cancel", headers=as_user(USER_ID))
    second = await client.post(f"/api/v1/imports/batches/{batch_id}/cancel", headers=as_user(USER_ID))

    assert first.status_code == 200
    assert first.json()["status"] == "cancelled"
    assert second.status_code == 400
    assert second.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_empty_batch_is_rejected(client):
    response = await client.post(
        "/api/v1/imports/batches",
        json={"import_type": "receipts", "files": []},
        headers=as_user(USER_ID),
    )

    assert response.status_code == 422


async def test_duplicate_upload_conflicts(client, session_manager):
    async with session_manager.session() as session:
        session.add(Document(
            user_id=USER_ID,
            document_type="receipt",
            file_format="jpg",
            file_name="lunch.jpg",
            file_url=(UPLOADS / "lunch.jpg").as_uri(),
            content_hash=compute_content_hash(b"jpeg bytes"),
            status="extracted",
        ))
        await session.commit()

    response = await client.post(
        "/api/v1/imports/uploads",
        files={"file": ("lunch.jpg", b"jpeg bytes", "image/jpeg")},
        headers=as_user(USER_ID),
    )

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "DUPLICATE_FILE"
    assert "existing_document_id" in error["details"]


async def test_list_categories(client):
    response = await client.get(
        "/api/v1/categories", params={"transaction_type": "income"}, headers=as_user(USER_ID)
    )

    assert response.status_code == 200
    names = {c["name"] for c in response.json()}
    assert "Salary" in names
    assert "Groceries" not in names


async def test_create_rule_and_preview(client):
    categories = (await client.get("/api/v1/categories", headers=as_user(USER_ID))).json()
    coffee = next(c for c in categories if c["name"] == "Coffee Shops")

    created = await client.post(
        "/api/v1/rules",
        json={"category_id": coffee["id"], "value": "tim hortons"},
        headers=as_user(USER_ID),
    )
    preview = await client.post(
        "/api/v1/categorize",
        params={"use_ai": "false"},
        json={"merchant_name": "TIM HORTONS #22"},
        headers=as_user(USER_ID),
    )

    assert created.status_code == 201
    assert created.json()["category_name"] == "Coffee Shops"
    assert preview.json()["category_id"] == coffee["id"]
    assert preview.json()["method"] == "rule"


async def test_bank_link_sync(client):
    payload = {"transactions": [
        {"external_id": "plaid-1", "transaction_date": "2026-09-14", "merchant_name": "UBER * 8812", "amount": "-18.40"},
    ]}

    first = await client.post(
        "/api/v1/banking/bank-link/transactions", params={"use_ai": "false"}, json=payload, headers=as_user(USER_ID)
    )
    second = await client.post(
        "/api/v1/banking/bank-link/transactions", params={"use_ai": "false"}, json=payload, headers=as_user(USER_ID)
    )

    assert first.status_code == 201
    assert first.json()["imported"] == 1
    assert second.json()["skipped_duplicates"] == 1
