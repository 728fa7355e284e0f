"""Celery tasks that drain the workflow queue.

``process_workflow_queue`` claims queue items one at a time and hands each
to the WorkflowEngine for a turn:

- turn finished (waiting, terminal)  -> item ``completed``
- turn hit the transition cap        -> item back to ``pending``
- GatewayUnavailable or a crash      -> ``Dispatcher.fail`` counts the
  attempt; a dead-lettered item fails its execution
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import QueueItemStatus
from core.exceptions import WorkflowError
from db.worker_session import worker_session
from worker.celery_app import celery_app
from workflow.dispatcher import QueueDispatcher
from workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)


async def process_queue_items(
    db: AsyncSession,
    max_items: Optional[int] = None,
    engine: Optional[WorkflowEngine] = None,
    dispatcher: Optional[QueueDispatcher] = None,
) -> dict:
    """Claim and run up to ``max_items`` queue items on one session."""
    dispatcher = dispatcher or QueueDispatcher(db)
    engine = engine or WorkflowEngine(db)
    max_items = max_items or dispatcher.batch_size
    summary = {"processed": 0, "completed": 0, "requeued": 0, "retrying": 0, "dead_lettered": 0}

    for _ in range(max_items):
        item = await dispatcher.claim_next()
        if item is None:
            break
        item_id = item.id
        summary["processed"] += 1

        try:
            result = await engine.run(item)
        except Exception as exc:
            if isinstance(exc, WorkflowError):
                error = f"{exc.error_code}: {exc.message}"
                logger.warning(f"Queue item {item_id} turn failed: {error}")
            else:
                error = f"{type(exc).__name__}: {exc}"
                logger.error(f"Queue item {item_id} turn crashed: {error}", exc_info=True)
            await db.rollback()

            settled = await dispatcher.fail(item_id, error)
            if settled.status == QueueItemStatus.FAILED.value:
                summary["dead_lettered"] += 1
                execution = await engine.execution_for_queue_item(settled)
                if execution is not None:
                    await engine.fail_execution(execution.id, error)
            else:
                summary["retrying"] += 1
            continue

        if result.yielded:
            await dispatcher.requeue(item_id)
            summary["requeued"] += 1
        else:
            await dispatcher.complete(item_id)
            summary["completed"] += 1

    return summary


async def _process_queue(max_items: Optional[int]) -> dict:
    async with worker_session() as session:
        return await process_queue_items(session, max_items=max_items)


async def _reclaim_stale() -> dict:
    async with worker_session() as session:
        reclaimed = await QueueDispatcher(session).reclaim_stale()
        return {
            "reclaimed": len(reclaimed),
            "dead_lettered": sum(1 for i in reclaimed if i.status == QueueItemStatus.FAILED.value),
        }


@celery_app.task(
    name="worker.tasks.workflow.process_workflow_queue",
    acks_late=True,
    queue="workflows",
)
def process_workflow_queue(max_items: int = None):
    """Drain a batch of the workflow queue (beat-triggered)."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        summary = loop.run_until_complete(_process_queue(max_items))
        if summary["processed"]:
            logger.info(f"Workflow queue batch: {summary}")
        return summary
    finally:
        loop.close()


@celery_app.task(
    name="worker.tasks.workflow.reclaim_stale_queue_items",
    queue="workflows",
)
def reclaim_stale_queue_items():
    """Return items whose processing lease expired to the queue (as failed attempts)."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_reclaim_stale())
        if result["reclaimed"]:
            logger.warning(f"Reclaimed stale queue items: {result}")
        return result
    finally:
        loop.close()
