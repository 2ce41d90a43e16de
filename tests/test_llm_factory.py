"""Tests for the LLM provider fallback chain."""

import pytest

from packages.common.errors import ProviderError
from packages.common.llm import FileAttachment
from packages.common.llm.base import extract_json_text
from packages.domain.categorization.schemas import AiCategorizationResponse
from tests.conftest import FakeProvider, make_factory

GOOD = {"category_name": "Groceries", "confidence": 0.9, "is_new_category": False}


async def test_primary_answer_is_used():
    primary = FakeProvider("primary", [GOOD])
    secondary = FakeProvider("secondary", [GOOD])

    parsed, response = await make_factory(primary, secondary).generate_json("prompt", AiCategorizationResponse)

    assert parsed.category_name == "Groceries"
    assert response.provider == "primary"
    assert secondary.calls == []


async def test_falls_back_when_primary_errors():
    primary = FakeProvider("primary", error=RuntimeError("rate limited"))
    secondary = FakeProvider("secondary", [GOOD])

    _, response = await make_factory(primary, secondary).generate_json("prompt", AiCategorizationResponse)

    assert response.provider == "secondary"
    assert len(primary.calls) == 1


async def test_falls_back_on_timeout():
    primary = FakeProvider("primary", [GOOD], delay=1.0)
    secondary = FakeProvider("secondary", [GOOD])

    factory = make_factory(primary, secondary, timeout_seconds=0.05)
    _, response = await factory.generate_json("prompt", AiCategorizationResponse)

    assert response.provider == "secondary"


@pytest.mark.parametrize("bad_output", [
    "I think this is groceries",
    {"category_name": "Groceries", "confidence": 1.5, "is_new_category": False},
    {"category_name": "Groceries", "confidence": 0.9, "is_new_category": "no"},
    {"category_name": "Groceries", "confidence": 0.9, "is_new_category": False, "extra": 1},
])
async def test_unschematized_output_falls_through(bad_output):
    primary = FakeProvider("primary", [bad_output])
    secondary = FakeProvider("secondary", [GOOD])

    _, response = await make_factory(primary, secondary).generate_json("prompt", AiCategorizationResponse)

    assert response.provider == "secondary"


async def test_all_providers_failing_raises():
    factory = make_factory(
        FakeProvider("primary", error=RuntimeError("down")),
        FakeProvider("secondary", ["not json"]),
    )

    with pytest.raises(ProviderError) as excinfo:
        await factory.generate_json("prompt", AiCategorizationResponse)

    assert "primary: down" in excinfo.value.message
    assert "secondary: invalid output" in excinfo.value.message


async def test_empty_chain_raises():
    with pytest.raises(ProviderError):
        await make_factory().generate_json("prompt", AiCategorizationResponse)


async def test_provider_without_attachment_support_is_skipped():
    text_only = FakeProvider("text-only", [GOOD], accepts_attachments=False)
    vision = FakeProvider("vision", [GOOD])
    attachment = FileAttachment(data=b"%PDF-1.4", mime_type="application/pdf")

    _, response = await make_factory(text_only, vision).generate_json(
        "prompt", AiCategorizationResponse, attachment=attachment
    )

    assert response.provider == "vision"
    assert text_only.calls == []
    assert vision.calls[0]["attachment"] is attachment


def test_json_fences_are_stripped():
    assert extract_json_text('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert extract_json_text('```\n{"a": 1}\n```') == '{"a": 1}'
    assert extract_json_text('  {"a": 1} ') == '{"a": 1}'
