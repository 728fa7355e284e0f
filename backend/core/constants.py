"""Constants and enums for the credentialing workflow engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    QUEUED = "queued"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    """Status of a single visited node."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING_EXTERNAL = "waitingExternal"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class QueueItemStatus(str, Enum):
    """Workflow queue item status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeType(str, Enum):
    """Node types a workflow definition may declare."""

    START = "start"
    FORM = "form"
    APPROVAL = "approval"
    SIGNATURE = "signature"
    NOTIFICATION = "notification"
    CONDITION = "condition"
    END = "end"


class WaitKind(str, Enum):
    """Kind of external decision a wait node blocks on."""

    APPROVAL = "approval"
    SIGNATURE = "signature"


class WaitTokenStatus(str, Enum):
    """External wait token lifecycle."""

    PENDING = "pending"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SlaTier(str, Enum):
    """Elapsed-time tiers against an SLA budget, in ascending severity."""

    NONE = "none"
    WARNING_80 = "80"
    WARNING_90 = "90"
    BREACHED = "breached"

    @property
    def rank(self) -> int:
        return _SLA_TIER_RANK[self]


_SLA_TIER_RANK = {
    SlaTier.NONE: 0,
    SlaTier.WARNING_80: 1,
    SlaTier.WARNING_90: 2,
    SlaTier.BREACHED: 3,
}


class SubjectStatus(str, Enum):
    """Workflow-facing status written back to the business subject."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    AWAITING_DECISION = "awaiting_decision"
    COMPLETED = "workflow_completed"
    FAILED = "workflow_failed"
    CANCELLED = "workflow_cancelled"


class JournalSeverity(str, Enum):
    """Severity of a journal entry."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.CANCELLED.value,
})

ACTIVE_QUEUE_STATUSES = (
    QueueItemStatus.PENDING.value,
    QueueItemStatus.PROCESSING.value,
)
