"""Workflow execution model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ExecutionStatus, SlaTier
from db.base import BaseModel


class WorkflowExecution(BaseModel):
    """One run of a pinned definition version for one subject.

    Attributes:
        id: Unique identifier (UUID string)
        definition_id: Pinned definition identifier
        definition_version: Pinned definition version
        subject_id: Business entity the run belongs to (e.g. an inscription)
        queue_item_id: Queue item that created the execution
        status: queued, running, waiting, completed, failed, cancelled
        current_node_id: Node the execution is at or will visit next
        context: Accumulating key/value map written by steps, read by guards
        started_at: Start timestamp
        completed_at: Terminal timestamp
        error_message: Populated when the execution fails or is cancelled
        last_notified_tier: Highest SLA tier already notified
        last_notified_at: When that tier was notified
    """

    __tablename__ = "workflow_executions"
    __table_args__ = (
        Index("ix_workflow_executions_subject_created", "subject_id", "created_at"),
    )

    definition_id: Mapped[str] = mapped_column(nullable=False, index=True)
    definition_version: Mapped[int] = mapped_column(nullable=False)
    subject_id: Mapped[str] = mapped_column(nullable=False, index=True)
    queue_item_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        default=ExecutionStatus.QUEUED.value, index=True
    )
    current_node_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
    last_notified_tier: Mapped[str] = mapped_column(default=SlaTier.NONE.value)
    last_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
