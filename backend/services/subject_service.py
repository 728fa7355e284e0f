"""Subject store backed by the workflow_subjects table."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.exceptions import NotFoundError
from db.models.subject import WorkflowSubject
from services.base import BaseService
from workflow.gateways import SubjectStore

logger = logging.getLogger(__name__)


class SqlSubjectStore(BaseService[WorkflowSubject], SubjectStore):
    """Reads and writes the workflow-facing columns of a subject.

    Rows are created on first write so a subject the engine has never
    seen can be enqueued without a separate registration step.
    """

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowSubject, db)

    async def get(self, subject_id: str) -> Optional[WorkflowSubject]:
        return await self.get_by_id(subject_id)

    async def get_or_create(self, subject_id: str) -> WorkflowSubject:
        subject = await self.get_by_id(subject_id)
        if subject is None:
            subject = await self.create({
                "id": subject_id,
                "status": "queued",
                "retry_count": 0,
                "max_retries": get_settings().WORKFLOW_SUBJECT_MAX_RETRIES,
            })
        return subject

    async def update(
        self,
        subject_id: str,
        status: Optional[str] = None,
        execution_id: Optional[str] = None,
        context_snapshot: Optional[dict] = None,
    ) -> WorkflowSubject:
        subject = await self.get_or_create(subject_id)
        if status is not None:
            subject.status = status
        if execution_id is not None:
            subject.workflow_execution_id = execution_id
        if context_snapshot is not None:
            subject.context_snapshot = dict(context_snapshot)
        await self.db.flush()
        return subject

    async def increment_retry(self, subject_id: str) -> int:
        subject = await self.get_by_id(subject_id)
        if subject is None:
            raise NotFoundError(f"Subject {subject_id} not found")
        subject.retry_count = (subject.retry_count or 0) + 1
        await self.db.flush()
        logger.info(f"Subject {subject_id} retry_count -> {subject.retry_count}")
        return subject.retry_count
