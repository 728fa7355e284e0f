"""Workflow queue item model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import QueueItemStatus
from db.base import BaseModel

_ACTIVE_PREDICATE = text("status IN ('pending', 'processing')")


class WorkflowQueueItem(BaseModel):
    """A requested run, decoupled from the execution that serves it.

    Attributes:
        id: Unique identifier (UUID string)
        subject_id: Business entity the run is for
        definition_id: Requested definition
        definition_version: Requested (pinned) version
        input_data: Initial context for the execution
        status: pending, processing, completed, failed
        attempts: Failed processing attempts so far
        max_attempts: Attempts allowed before the item is dead-lettered
        error_message: Last processing error
        execution_id: Execution to continue instead of creating a new one
        available_at: Earliest time the item may be claimed again
        processing_started_at: Lease start of the current claim
        processed_at: Terminal timestamp
    """

    __tablename__ = "workflow_queue"
    __table_args__ = (
        # At most one in-flight item per subject
        Index(
            "uq_workflow_queue_active_subject",
            "subject_id",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
        Index("ix_workflow_queue_claim", "status", "available_at", "created_at"),
    )

    subject_id: Mapped[str] = mapped_column(nullable=False, index=True)
    definition_id: Mapped[str] = mapped_column(nullable=False)
    definition_version: Mapped[int] = mapped_column(nullable=False)
    input_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(default=QueueItemStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(default=0)
    max_attempts: Mapped[int] = mapped_column(default=3)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
    execution_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    available_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
