"""Tests for the Celery task wiring around JobProcessor."""

from packages.common.llm import build_llm_factory
from packages.common.schemas.enums import FileFormat, ImportType
from packages.domain.imports.schemas import JobPayload
from services.worker.tasks import process_batch_item as task_module
from tests.conftest import USER_ID, FakeProvider, make_factory


class ClosingProvider(FakeProvider):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.closed = False

    async def close(self):
        self.closed = True


def orphan_payload():
    return JobPayload(
        batch_id="missing",
        batch_item_id="missing-item",
        file_url="file:///nowhere.jpg",
        file_name="nowhere.jpg",
        file_format=FileFormat.JPG,
        user_id=USER_ID,
        import_type=ImportType.RECEIPTS,
    )


def test_build_llm_factory_returns_a_new_chain_each_time():
    assert build_llm_factory() is not build_llm_factory()


async def test_aclose_closes_providers_that_support_it():
    closing = ClosingProvider("primary", ["{}"])
    plain = FakeProvider("secondary", ["{}"])

    await make_factory(closing, plain).aclose()

    assert closing.closed is True


def test_extraction_and_ai_categorization_share_the_chain():
    factory = make_factory(FakeProvider("primary", ["{}"]))

    processor = task_module.build_processor(factory)

    assert processor.importer.extractor.llm_factory is factory
    ai = next(s for s in processor.importer.engine.strategies if s.name == "ai")
    assert ai.llm_factory is factory


async def test_each_run_builds_and_closes_its_own_chain(monkeypatch, session_manager):
    providers = []

    def build():
        provider = ClosingProvider("primary", ["{}"])
        providers.append(provider)
        return make_factory(provider)

    async def already_initialized(**kwargs):
        return None

    monkeypatch.setattr(task_module, "build_llm_factory", build)
    monkeypatch.setattr(task_module, "ensure_initialized", already_initialized)
    monkeypatch.setattr(task_module, "sessionmanager", session_manager)

    first = await task_module.run_batch_item(orphan_payload())
    second = await task_module.run_batch_item(orphan_payload())

    assert first["error_code"] == second["error_code"] == "BATCH_NOT_FOUND"
    assert len(providers) == 2
    assert all(p.closed for p in providers)
