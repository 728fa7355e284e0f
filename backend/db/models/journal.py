"""
Workflow journal model.

Append-only event log for executions: lifecycle transitions,
dispatcher retries, SLA alerts, signature warnings and expiries.
"""

from sqlalchemy import JSON, Column, Index, String, Text

from db.base import BaseModel


class WorkflowJournalEntry(BaseModel):
    """
    One journaled event.

    Provides the audit trail operators use to reconstruct why an
    execution was alerted, escalated, retried or failed.
    """

    __tablename__ = "workflow_journal"

    execution_id = Column(String(36), nullable=True, index=True)
    subject_id = Column(String(64), nullable=True, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    message = Column(Text, nullable=False, default="")
    details = Column(JSON, nullable=True, default=dict)
    severity = Column(String(20), nullable=False, default="info")

    __table_args__ = (
        Index("ix_workflow_journal_exec_type", "execution_id", "event_type"),
    )
