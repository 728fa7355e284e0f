"""
Workflow journal.

Append-only record of what happened to an execution outside its step
rows: lifecycle changes, dispatcher retries and dead-letters, SLA tier
alerts, signature warnings and expiries, cancellations and retries.
Entries join the caller's unit of work; they are committed with the state
change they describe.
"""

from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import JournalSeverity
from db.models.journal import WorkflowJournalEntry

logger = structlog.get_logger(__name__)


class ExecutionJournal:
    """Persistent journal of execution events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_event(
        self,
        event_type: str,
        message: str,
        execution_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        details: Optional[dict] = None,
        severity: JournalSeverity = JournalSeverity.INFO,
    ) -> WorkflowJournalEntry:
        """Record an event; it is flushed with the caller's session."""
        severity = JournalSeverity(severity)
        getattr(logger, severity.value)(
            message,
            event_type=event_type,
            execution_id=execution_id,
            subject_id=subject_id,
        )

        entry = WorkflowJournalEntry(
            execution_id=execution_id,
            subject_id=subject_id,
            event_type=event_type,
            message=message,
            details=details or {},
            severity=severity.value,
        )
        self.db.add(entry)
        return entry

    async def get_journal(
        self,
        execution_id: str,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[WorkflowJournalEntry]:
        """Journal entries for an execution, oldest first."""
        query = select(WorkflowJournalEntry).where(
            WorkflowJournalEntry.execution_id == execution_id
        )
        if event_type:
            query = query.where(WorkflowJournalEntry.event_type == event_type)
        query = query.order_by(WorkflowJournalEntry.created_at.asc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())
