"""Workflow step execution model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import StepStatus
from db.base import BaseModel


class WorkflowStepExecution(BaseModel):
    """Audit row for one node visited by an execution.

    Attributes:
        id: Unique identifier (UUID string)
        execution_id: Foreign key to WorkflowExecution
        sequence: Position in the execution's walk, starting at 1
        node_id: Visited node id
        node_type: Visited node type
        status: pending, running, waitingExternal, completed, failed, skipped
        input_snapshot: Context as it was when the node was entered
        output_data: Node result (correlation reference, decision, form data)
        started_at: Visit start timestamp
        completed_at: Visit end timestamp
        error_message: Error when the visit failed
    """

    __tablename__ = "workflow_step_executions"
    __table_args__ = (
        UniqueConstraint("execution_id", "sequence", name="uq_step_execution_sequence"),
    )

    execution_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    node_id: Mapped[str] = mapped_column(nullable=False)
    node_type: Mapped[str] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(default=StepStatus.PENDING.value, index=True)
    input_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    output_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
