"""
Batch item processing task

One Celery task per uploaded file. The task never retries on its own:
failures are recorded on the item and the user retries explicitly.
"""
import asyncio
from typing import Any, Dict

import structlog
from sqlalchemy.pool import NullPool

from services.worker.celery_app import app
from packages.common.database import ensure_initialized, sessionmanager
from packages.common.llm import LlmProviderFactory, build_llm_factory
from packages.domain.categorization.ai_matcher import AiMatcher
from packages.domain.categorization.categorization_service import CategorizationEngine
from packages.domain.categorization.history_matcher import history_matcher
from packages.domain.categorization.rule_matcher import rule_matcher
from packages.domain.imports.document_importer import DocumentImporter
from packages.domain.imports.extraction import LlmDocumentExtractor
from packages.domain.imports.job_processor import JobProcessor
from packages.domain.imports.schemas import JobPayload

logger = structlog.get_logger()


def build_processor(llm_factory: LlmProviderFactory) -> JobProcessor:
    """Pipeline whose extraction and AI categorization share one provider chain"""
    extractor = LlmDocumentExtractor(llm_factory=llm_factory)
    engine = CategorizationEngine(strategies=[rule_matcher, history_matcher, AiMatcher(llm_factory=llm_factory)])
    return JobProcessor(extractor=extractor, importer=DocumentImporter(extractor, engine=engine))


async def run_batch_item(payload: JobPayload) -> Dict[str, Any]:
    """Process one item in a fresh session"""
    # Each task runs in its own event loop; pooled connections and provider
    # HTTP clients cannot cross loops
    await ensure_initialized(poolclass=NullPool)

    llm_factory = build_llm_factory()
    try:
        processor = build_processor(llm_factory)
        async with sessionmanager.session() as db:
            result = await processor.process_batch_item(db, payload)
    finally:
        await llm_factory.aclose()
    return result.model_dump(mode="json")


@app.task(name="services.worker.tasks.process_batch_item.process_batch_item_task")
def process_batch_item_task(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Process one batch item.

    Flow:
    1. Validate the payload
    2. Run JobProcessor (extract -> categorize -> persist -> duplicate check)
    3. Return the JobProcessingResult as a dict

    Args:
        payload: JobPayload as JSON

    Returns:
        Dict with processing results
    """
    job = JobPayload.model_validate(payload)
    logger.info("batch_item_task_started",
                batch_id=job.batch_id,
                batch_item_id=job.batch_item_id,
                file_name=job.file_name)

    result = asyncio.run(run_batch_item(job))

    logger.info("batch_item_task_finished",
                batch_id=job.batch_id,
                batch_item_id=job.batch_item_id,
                success=result["success"],
                error_code=result.get("error_code"))
    return result
