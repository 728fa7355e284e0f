"""Workflow service: definition publishing, enqueueing and subject retries."""

import logging
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import ExecutionStatus, SubjectStatus
from core.exceptions import (
    ConflictError,
    MalformedDefinition,
    NotFoundError,
    RetryLimitExceeded,
    ValidationError,
)
from core.utils import utc_now
from db.models.execution import WorkflowExecution
from db.models.queue_item import WorkflowQueueItem
from db.models.workflow import WorkflowDefinitionModel
from services.base import BaseService
from services.subject_service import SqlSubjectStore
from workflow import graph
from workflow.dispatcher import QueueDispatcher

logger = logging.getLogger(__name__)


class DefinitionService(BaseService[WorkflowDefinitionModel]):
    """Publish and look up versioned workflow definitions."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowDefinitionModel, db)

    async def publish(
        self,
        definition_id: str,
        nodes: list[dict],
        edges: list[dict],
        name: str = "",
        sla_hours: Optional[float] = None,
    ) -> WorkflowDefinitionModel:
        """Validate and store a new version of a definition.

        Published versions are immutable; every publish creates version
        ``max + 1`` and running executions stay pinned to theirs.

        Raises:
            ValidationError: with one violation per structural problem
        """
        raw = {"id": definition_id, "name": name, "nodes": nodes, "edges": edges}
        try:
            parsed = graph.WorkflowDefinition.from_dict(raw)
        except MalformedDefinition as exc:
            raise ValidationError(exc.message, violations=exc.violations) from exc

        violations = graph.validate(parsed)
        if violations:
            raise ValidationError(
                f"Definition {definition_id} failed validation", violations=violations
            )

        result = await self.db.execute(
            select(func.max(WorkflowDefinitionModel.version)).where(
                WorkflowDefinitionModel.definition_id == definition_id
            )
        )
        version = (result.scalar() or 0) + 1

        row = await self.create({
            "definition_id": definition_id,
            "version": version,
            "name": name,
            "nodes": [n.to_dict() for n in parsed.nodes],
            "edges": [e.to_dict() for e in parsed.edges],
            "active": True,
            "sla_hours": sla_hours,
            "published_at": utc_now(),
        })
        await self.db.commit()
        logger.info(f"Published workflow definition {definition_id} v{version}")
        return row

    async def get_version(self, definition_id: str, version: int) -> WorkflowDefinitionModel:
        result = await self.db.execute(
            select(WorkflowDefinitionModel).where(
                WorkflowDefinitionModel.definition_id == definition_id,
                WorkflowDefinitionModel.version == version,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"Definition {definition_id} v{version} not found")
        return row

    async def get_latest(self, definition_id: str, active_only: bool = False) -> WorkflowDefinitionModel:
        query = select(WorkflowDefinitionModel).where(
            WorkflowDefinitionModel.definition_id == definition_id
        )
        if active_only:
            query = query.where(WorkflowDefinitionModel.active.is_(True))
        result = await self.db.execute(
            query.order_by(WorkflowDefinitionModel.version.desc()).limit(1)
        )
        row = result.scalar_one_or_none()
        if row is None:
            qualifier = "active " if active_only else ""
            raise NotFoundError(f"No {qualifier}version of definition {definition_id}")
        return row

    async def deactivate(self, definition_id: str, version: int) -> WorkflowDefinitionModel:
        """Stop new enqueues from picking a version; pinned executions keep running."""
        row = await self.get_version(definition_id, version)
        row.active = False
        await self.db.commit()
        logger.info(f"Deactivated workflow definition {definition_id} v{version}")
        return row


class WorkflowService:
    """Request-path operations over executions and subjects."""

    def __init__(self, db: AsyncSession, dispatcher: Optional[QueueDispatcher] = None):
        self.db = db
        self.definitions = DefinitionService(db)
        self.subjects = SqlSubjectStore(db)
        self.dispatcher = dispatcher or QueueDispatcher(db)

    async def enqueue(
        self,
        subject_id: str,
        definition_id: str,
        input_data: Optional[dict] = None,
        version: Optional[int] = None,
    ) -> WorkflowQueueItem:
        """Queue a run of the latest active (or an explicit) definition version.

        Raises:
            NotFoundError: no such definition/version
            ConflictError: the subject already has an in-flight item
        """
        if version is None:
            row = await self.definitions.get_latest(definition_id, active_only=True)
        else:
            row = await self.definitions.get_version(definition_id, version)

        item = await self.dispatcher.enqueue(
            subject_id=subject_id,
            definition_id=row.definition_id,
            definition_version=row.version,
            input_data=input_data,
        )
        await self.subjects.update(subject_id, status=SubjectStatus.QUEUED.value)
        await self.db.commit()
        return item

    async def latest_execution(self, subject_id: str) -> Optional[WorkflowExecution]:
        result = await self.db.execute(
            select(WorkflowExecution)
            .where(WorkflowExecution.subject_id == subject_id)
            .order_by(WorkflowExecution.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def retry_subject(self, subject_id: str) -> WorkflowQueueItem:
        """Start a fresh execution for a subject whose last run failed or was cancelled.

        The subject's business ``retry_count`` is bounded by ``max_retries``;
        it is independent of the queue item's ``attempts``.

        Raises:
            NotFoundError: unknown subject or no previous execution
            ConflictError: the latest execution is not failed/cancelled
            RetryLimitExceeded: ``retry_count`` reached ``max_retries``
        """
        subject = await self.subjects.get(subject_id)
        if subject is None:
            raise NotFoundError(f"Subject {subject_id} not found")

        previous = await self.latest_execution(subject_id)
        if previous is None:
            raise NotFoundError(f"Subject {subject_id} has no workflow execution to retry")
        if previous.status not in (ExecutionStatus.FAILED.value, ExecutionStatus.CANCELLED.value):
            raise ConflictError(
                f"Latest execution {previous.id} of subject {subject_id} is {previous.status}"
            )
        if subject.retry_count >= subject.max_retries:
            raise RetryLimitExceeded(
                f"Subject {subject_id} reached its retry limit ({subject.retry_count}/{subject.max_retries})"
            )

        original_input = await self._original_input(previous)
        input_data = {
            **original_input,
            "isRetry": True,
            "previousExecutionId": previous.id,
        }
        row = await self.definitions.get_latest(previous.definition_id, active_only=True)
        item = await self.dispatcher.enqueue(
            subject_id=subject_id,
            definition_id=row.definition_id,
            definition_version=row.version,
            input_data=input_data,
        )
        await self.subjects.increment_retry(subject_id)
        await self.subjects.update(subject_id, status=SubjectStatus.QUEUED.value)
        await self.db.commit()
        logger.info(
            f"Subject {subject_id} retry enqueued as {item.id} (previous execution {previous.id})"
        )
        return item

    async def _original_input(self, execution: WorkflowExecution) -> dict[str, Any]:
        if execution.queue_item_id:
            item = await self.db.get(WorkflowQueueItem, execution.queue_item_id)
            if item is not None and item.input_data:
                return dict(item.input_data)
        return {
            k: v for k, v in (execution.context or {}).items()
            if k not in ("decision", "decisions", "isRetry", "previousExecutionId")
        }

    async def list_executions(
        self,
        offset: int = 0,
        limit: int = 20,
        status: Optional[str] = None,
        subject_id: Optional[str] = None,
    ) -> tuple[Sequence[WorkflowExecution], int]:
        filters: dict[str, Any] = {}
        if status:
            filters["status"] = status
        if subject_id:
            filters["subject_id"] = subject_id
        return await BaseService(WorkflowExecution, self.db).list(
            offset=offset, limit=limit, filters=filters
        )
