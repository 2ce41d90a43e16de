"""Shared pytest fixtures for tallybook tests."""

import asyncio
import json
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy.pool import NullPool

import packages.common.models  # noqa: F401  (registers tables on Base.metadata)
from packages.common.database import DatabaseSessionManager
from packages.common.llm import LlmProviderFactory, LlmResponse
from packages.domain.categorization.ai_matcher import AiMatcher
from packages.domain.categorization.categorization_service import CategorizationEngine
from packages.domain.categorization.history_matcher import HistoryMatcher
from packages.domain.categorization.rule_matcher import RuleMatcher
from packages.domain.categorization.system_categories import seed_system_categories

USER_ID = "alice@example.com"
OTHER_USER_ID = "bob@example.com"


@pytest.fixture
async def session_manager(tmp_path):
    """Session manager bound to a temporary SQLite file."""
    manager = DatabaseSessionManager()
    await manager.init(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    await manager.create_all()

    yield manager

    await manager.close()


@pytest.fixture
async def db(session_manager):
    """Database session for a single test."""
    async with session_manager.session() as session:
        yield session


@pytest.fixture
async def system_categories(db):
    """Seed the shared categories and return them keyed by name."""
    from sqlalchemy import select
    from packages.common.models import Category

    await seed_system_categories(db)
    result = await db.execute(select(Category).where(Category.type == "system"))
    return {c.name: c for c in result.scalars().all()}


class FakeProvider:
    """LLM provider returning canned responses."""

    def __init__(self, name, responses=None, error=None, delay=0.0, accepts_attachments=True):
        self.name = name
        self.responses = list(responses or [])
        self.error = error
        self.delay = delay
        self.accepts_attachments = accepts_attachments
        self.calls = []

    async def complete(self, prompt, *, max_tokens, temperature, attachment=None):
        self.calls.append({"prompt": prompt, "attachment": attachment, "temperature": temperature})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        text = response if isinstance(response, str) else json.dumps(response)
        return LlmResponse(text=text, provider=self.name, model="fake-model")

    def supports_attachment(self, attachment):
        return self.accepts_attachments


def make_factory(*providers, timeout_seconds=5.0):
    return LlmProviderFactory(providers=list(providers), timeout_seconds=timeout_seconds)


def make_engine(*providers):
    """Rule -> history -> AI engine; AI uses the given fake providers."""
    return CategorizationEngine(strategies=[
        RuleMatcher(),
        HistoryMatcher(),
        AiMatcher(llm_factory=make_factory(*providers)),
    ])


@pytest.fixture
def deterministic_engine():
    """Engine without the AI strategy."""
    return CategorizationEngine(strategies=[RuleMatcher(), HistoryMatcher()])


class FakeExtractor:
    """Extractor keyed by file bytes; an exception value is raised."""

    def __init__(self, outcomes=None):
        self.outcomes = dict(outcomes or {})
        self.calls = []

    async def extract(self, file_bytes, declared_type, file_format):
        self.calls.append((file_bytes, declared_type, file_format))
        outcome = self.outcomes[file_bytes]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingQueueClient:
    """Stands in for the Celery app; remembers every sent task."""

    def __init__(self, fail_on=None):
        self.sent = []
        self.fail_on = set(fail_on or [])

    def send_task(self, name, args=None, queue=None):
        payload = args[0]
        if payload["file_name"] in self.fail_on:
            raise ConnectionError("broker unavailable")
        self.sent.append({"name": name, "payload": payload, "queue": queue})
        return SimpleNamespace(id=f"task-{len(self.sent)}")


def receipt_fields(merchant, day, total, confidence=0.9):
    """Extracted receipt fields as an extractor would return them."""
    return {
        "merchant_name": merchant,
        "transaction_date": day,
        "total_amount": str(Decimal(total)),
        "currency": "USD",
        "description": None,
        "confidence": confidence,
    }
