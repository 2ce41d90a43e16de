"""
Queue Sender - hand batch items to workers by task name

The API never imports worker code; it sends the task name through the
broker. Each item is its own job so one failing file never blocks the rest.
"""
from typing import Iterable, Optional

import structlog
from celery import Celery

from packages.common.config import get_settings
from packages.common.errors import describe_error
from packages.domain.imports.schemas import BatchEnqueueResult, EnqueueResult, JobPayload

logger = structlog.get_logger()
settings = get_settings()

PROCESS_ITEM_TASK = "services.worker.tasks.process_batch_item.process_batch_item_task"
IMPORTS_QUEUE = "imports"

celery_app = Celery("tallybook")
celery_app.conf.broker_url = settings.celery_broker_url
celery_app.conf.result_backend = settings.celery_result_backend


class QueueSender:
    """Enqueues processBatchItem jobs"""

    def __init__(self, client: Optional[Celery] = None):
        self.client = client or celery_app

    def enqueue_batch_item(self, payload: JobPayload) -> EnqueueResult:
        """
        Send one job.

        Returns:
            EnqueueResult with the task id, or the error on broker failure
        """
        try:
            task = self.client.send_task(
                PROCESS_ITEM_TASK,
                args=[payload.model_dump(mode="json")],
                queue=IMPORTS_QUEUE,
            )
        except Exception as e:
            logger.error("enqueue_failed",
                         batch_id=payload.batch_id,
                         batch_item_id=payload.batch_item_id,
                         error=describe_error(e))
            return EnqueueResult(success=False, error=describe_error(e))

        logger.info("batch_item_enqueued",
                    batch_id=payload.batch_id,
                    batch_item_id=payload.batch_item_id,
                    task_id=task.id)
        return EnqueueResult(success=True, event_id=task.id)

    def enqueue_batch(self, payloads: Iterable[JobPayload]) -> BatchEnqueueResult:
        """Send one job per item; partial failure is reported, not raised"""
        enqueued = 0
        errors = []
        failed_items = {}
        for payload in payloads:
            result = self.enqueue_batch_item(payload)
            if result.success:
                enqueued += 1
            else:
                errors.append(f"{payload.file_name}: {result.error}")
                failed_items[payload.batch_item_id] = result.error

        return BatchEnqueueResult(
            success=not errors,
            enqueued=enqueued,
            failed=len(errors),
            errors=errors,
            failed_items=failed_items,
        )


# Singleton instance
queue_sender = QueueSender()
