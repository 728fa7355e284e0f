"""
Queue dispatcher.

Owns ``workflow_queue`` rows. A queue item records that a run was
requested; workers claim items one at a time and hand them to the engine.

Guarantees:
- at most one pending/processing item per subject (checked on enqueue and
  enforced by a partial unique index)
- ``claim_next`` is a compare-and-swap on ``status``, so two workers racing
  for the same item cannot both win
- ``fail`` counts the attempt; below ``max_attempts`` the item goes back to
  ``pending`` after a backoff, otherwise it is dead-lettered as ``failed``
- a stale ``processing`` lease is reclaimed as a failed attempt
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import ACTIVE_QUEUE_STATUSES, JournalSeverity, QueueItemStatus
from core.exceptions import ConflictError, NotFoundError
from core.utils import utc_now
from db.models.queue_item import WorkflowQueueItem
from workflow.journal import ExecutionJournal
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)


class QueueDispatcher:
    """Enqueue, claim and settle workflow queue items."""

    def __init__(
        self,
        db: AsyncSession,
        max_attempts: Optional[int] = None,
        retry_strategy: Optional[RetryStrategy] = None,
    ):
        settings = get_settings()
        self.db = db
        self.max_attempts = max_attempts or settings.WORKFLOW_QUEUE_MAX_ATTEMPTS
        self.retry_strategy = retry_strategy or RetryStrategy.from_settings(settings)
        self.lease_seconds = settings.WORKFLOW_QUEUE_LEASE_SECONDS
        self.batch_size = settings.WORKFLOW_QUEUE_BATCH_SIZE
        self.journal = ExecutionJournal(db)

    # ─── Enqueue ───────────────────────────────────────────

    async def enqueue(
        self,
        subject_id: str,
        definition_id: str,
        definition_version: int,
        input_data: Optional[dict] = None,
        execution_id: Optional[str] = None,
    ) -> WorkflowQueueItem:
        """Create a pending item.

        Raises:
            ConflictError: the subject already has a pending or processing item
        """
        active = await self.active_item_for(subject_id)
        if active is not None:
            raise ConflictError(
                f"Subject {subject_id} already has an in-flight queue item ({active.id}, {active.status})"
            )

        item = WorkflowQueueItem(
            subject_id=subject_id,
            definition_id=definition_id,
            definition_version=definition_version,
            input_data=dict(input_data or {}),
            status=QueueItemStatus.PENDING.value,
            attempts=0,
            max_attempts=self.max_attempts,
            execution_id=execution_id,
            available_at=utc_now(),
        )
        self.db.add(item)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise ConflictError(
                f"Subject {subject_id} already has an in-flight queue item"
            ) from exc

        logger.info(
            "Queue item enqueued",
            queue_item_id=item.id,
            subject_id=subject_id,
            definition_id=definition_id,
            definition_version=definition_version,
            continuation=execution_id is not None,
        )
        return item

    async def enqueue_continuation(self, execution) -> WorkflowQueueItem:
        """Queue another turn for an execution that hit the per-turn transition cap."""
        return await self.enqueue(
            subject_id=execution.subject_id,
            definition_id=execution.definition_id,
            definition_version=execution.definition_version,
            input_data={},
            execution_id=execution.id,
        )

    async def active_item_for(self, subject_id: str) -> Optional[WorkflowQueueItem]:
        result = await self.db.execute(
            select(WorkflowQueueItem)
            .where(
                WorkflowQueueItem.subject_id == subject_id,
                WorkflowQueueItem.status.in_(ACTIVE_QUEUE_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ─── Claim ─────────────────────────────────────────────

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[WorkflowQueueItem]:
        """Move the oldest claimable pending item to ``processing`` and return it.

        Returns None when nothing is claimable.
        """
        now = now or utc_now()
        result = await self.db.execute(
            select(WorkflowQueueItem.id)
            .where(
                WorkflowQueueItem.status == QueueItemStatus.PENDING.value,
                (WorkflowQueueItem.available_at.is_(None)) | (WorkflowQueueItem.available_at <= now),
            )
            .order_by(WorkflowQueueItem.created_at.asc())
            .limit(self.batch_size)
        )
        candidates = [row[0] for row in result.all()]

        for item_id in candidates:
            claimed = await self.db.execute(
                update(WorkflowQueueItem)
                .where(
                    WorkflowQueueItem.id == item_id,
                    WorkflowQueueItem.status == QueueItemStatus.PENDING.value,
                )
                .values(
                    status=QueueItemStatus.PROCESSING.value,
                    processing_started_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:
                await self.db.commit()
                item = await self.get(item_id, refresh=True)
                logger.info("Queue item claimed", queue_item_id=item_id, attempts=item.attempts)
                return item

        return None

    # ─── Settle ────────────────────────────────────────────

    async def complete(self, item_id: str) -> WorkflowQueueItem:
        """Mark a processing item done."""
        item = await self.get(item_id, refresh=True)
        now = utc_now()
        item.status = QueueItemStatus.COMPLETED.value
        item.processed_at = now
        item.error_message = None
        await self.db.commit()
        logger.info("Queue item completed", queue_item_id=item_id)
        return item

    async def fail(self, item_id: str, error: str) -> WorkflowQueueItem:
        """Count a failed attempt; requeue with backoff or dead-letter.

        Returns:
            The item, ``pending`` when another attempt is allowed, ``failed`` otherwise.
        """
        item = await self.get(item_id, refresh=True)
        if item.status in (QueueItemStatus.COMPLETED.value, QueueItemStatus.FAILED.value):
            raise ConflictError(f"Queue item {item_id} is already {item.status}")
        return await self._count_failed_attempt(item, error, utc_now())

    async def requeue(self, item_id: str) -> WorkflowQueueItem:
        """Return a processing item to ``pending`` without counting an attempt."""
        item = await self.get(item_id, refresh=True)
        item.status = QueueItemStatus.PENDING.value
        item.processing_started_at = None
        item.available_at = utc_now()
        await self.db.commit()
        logger.info("Queue item requeued for another turn", queue_item_id=item_id)
        return item

    async def reclaim_stale(
        self,
        lease_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[WorkflowQueueItem]:
        """Reclaim items whose processing lease expired; each counts as a failed attempt."""
        now = now or utc_now()
        cutoff = now - timedelta(seconds=lease_seconds or self.lease_seconds)
        result = await self.db.execute(
            select(WorkflowQueueItem).where(
                WorkflowQueueItem.status == QueueItemStatus.PROCESSING.value,
                WorkflowQueueItem.processing_started_at < cutoff,
            )
        )
        reclaimed = []
        for item in result.scalars().all():
            reclaimed.append(
                await self._count_failed_attempt(item, "Processing lease expired", now)
            )
        if reclaimed:
            logger.warning("Reclaimed stale queue items", count=len(reclaimed))
        return reclaimed

    async def _count_failed_attempt(
        self,
        item: WorkflowQueueItem,
        error: str,
        now: datetime,
    ) -> WorkflowQueueItem:
        attempts = min(item.attempts + 1, item.max_attempts)
        values = {
            "attempts": attempts,
            "error_message": error,
            "processing_started_at": None,
            "updated_at": now,
        }
        if self.retry_strategy.should_retry(attempts, item.max_attempts):
            values["status"] = QueueItemStatus.PENDING.value
            values["available_at"] = self.retry_strategy.next_available_at(attempts, now)
        else:
            values["status"] = QueueItemStatus.FAILED.value
            values["processed_at"] = now

        # Only settle the claim we saw; a concurrent reclaim or settle wins otherwise
        settled = await self.db.execute(
            update(WorkflowQueueItem)
            .where(
                WorkflowQueueItem.id == item.id,
                WorkflowQueueItem.status == item.status,
                WorkflowQueueItem.attempts == item.attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if settled.rowcount != 1:
            raise ConflictError(f"Queue item {item.id} was settled concurrently")

        if values["status"] == QueueItemStatus.FAILED.value:
            await self.journal.record_event(
                "queue_dead_lettered",
                f"Queue item dead-lettered after {attempts} attempt(s): {error}",
                execution_id=item.execution_id,
                subject_id=item.subject_id,
                details={"queue_item_id": item.id, "attempts": attempts},
                severity=JournalSeverity.ERROR,
            )
        else:
            logger.warning(
                "Queue item attempt failed, will retry",
                queue_item_id=item.id,
                attempts=attempts,
                max_attempts=item.max_attempts,
                error=error,
            )

        await self.db.commit()
        return await self.get(item.id, refresh=True)

    # ─── Read ──────────────────────────────────────────────

    async def get(self, item_id: str, refresh: bool = False) -> WorkflowQueueItem:
        """Load an item.

        Raises:
            NotFoundError: no such item
        """
        item = await self.db.get(WorkflowQueueItem, item_id, populate_existing=refresh)
        if item is None:
            raise NotFoundError(f"Queue item {item_id} not found")
        return item
