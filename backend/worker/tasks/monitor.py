"""Celery task for the deadline and escalation monitor."""

import asyncio
import logging

from db.worker_session import worker_session
from worker.celery_app import celery_app
from workflow.monitor import DeadlineMonitor

logger = logging.getLogger(__name__)


async def _check_deadlines() -> dict:
    async with worker_session() as session:
        report = await DeadlineMonitor(session).run()
        return report.to_dict()


@celery_app.task(
    name="worker.tasks.monitor.check_workflow_deadlines",
    queue="monitor",
)
def check_workflow_deadlines():
    """SLA tiers and signature deadlines (hourly, configured in beat_schedule)."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_check_deadlines())
        logger.info(
            "Deadline check: %d execution(s), %d SLA alert(s), %d signature warning(s), %d expired",
            result["checked_executions"],
            len(result["sla_alerts"]),
            len(result["signature_warnings"]),
            len(result["signatures_expired"]),
        )
        return result
    finally:
        loop.close()
