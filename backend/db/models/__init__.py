"""Database models for the credentialing workflow engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import WorkflowDefinitionModel
from db.models.execution import WorkflowExecution
from db.models.workflow_step import WorkflowStepExecution
from db.models.queue_item import WorkflowQueueItem
from db.models.wait_token import ExternalWaitToken
from db.models.subject import WorkflowSubject
from db.models.journal import WorkflowJournalEntry

__all__ = [
    "WorkflowDefinitionModel",
    "WorkflowExecution",
    "WorkflowStepExecution",
    "WorkflowQueueItem",
    "ExternalWaitToken",
    "WorkflowSubject",
    "WorkflowJournalEntry",
]
