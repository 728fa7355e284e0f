"""External wait token model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import WaitTokenStatus
from db.base import BaseModel


class ExternalWaitToken(BaseModel):
    """Correlation record for a step blocked on an approval or a signature.

    Attributes:
        id: Unique identifier (UUID string)
        step_execution_id: Step in waitingExternal state
        execution_id: Owning execution
        kind: approval or signature
        external_ref: Correlation reference returned by the gateway
        external_status: Last status reported by the external system
        status: pending, consumed, expired, cancelled
        signers: Signers or assignees returned by the gateway
        deadline: When the wait is considered overdue
        alerted_at: When the single pre-expiry warning was sent
        consumed_at: When the decision was applied
    """

    __tablename__ = "external_wait_tokens"

    step_execution_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_step_executions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    execution_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[str] = mapped_column(nullable=False, index=True)
    external_ref: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    external_status: Mapped[str] = mapped_column(default="pending")
    status: Mapped[str] = mapped_column(default=WaitTokenStatus.PENDING.value, index=True)
    signers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    alerted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
