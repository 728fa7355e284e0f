"""Workflow-facing slice of the business subject."""

from typing import Optional

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class WorkflowSubject(BaseModel):
    """The columns of a business entity the engine is allowed to touch.

    The id is the subject id used by queue items and executions
    (for example an inscription id).

    Attributes:
        status: Workflow-facing status
        retry_count: Business-level resubmissions used
        max_retries: Business-level resubmissions allowed
        workflow_execution_id: Latest execution for the subject
        context_snapshot: Context of the latest execution
    """

    __tablename__ = "workflow_subjects"

    status: Mapped[str] = mapped_column(default="queued", index=True)
    retry_count: Mapped[int] = mapped_column(default=0)
    max_retries: Mapped[int] = mapped_column(default=3)
    workflow_execution_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    context_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
