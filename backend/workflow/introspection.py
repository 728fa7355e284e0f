"""Read-only execution state aggregate."""

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import StepStatus, WaitTokenStatus
from core.exceptions import NotFoundError
from core.utils import as_utc, duration_ms
from db.models.execution import WorkflowExecution
from db.models.subject import WorkflowSubject
from db.models.wait_token import ExternalWaitToken
from db.models.workflow_step import WorkflowStepExecution

_BLOCKING_TOKEN_STATUSES = (WaitTokenStatus.PENDING.value, WaitTokenStatus.EXPIRED.value)


def _iso(value) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


async def get_state(
    db: AsyncSession,
    execution_id: str,
    include_context: bool = False,
) -> dict[str, Any]:
    """Execution, its ordered steps and progress statistics.

    Args:
        db: Database session
        execution_id: Execution to describe
        include_context: Also return the execution context

    Raises:
        NotFoundError: unknown execution
    """
    execution = await db.get(WorkflowExecution, execution_id)
    if execution is None:
        raise NotFoundError(f"Execution {execution_id} not found")

    result = await db.execute(
        select(WorkflowStepExecution)
        .where(WorkflowStepExecution.execution_id == execution_id)
        .order_by(WorkflowStepExecution.sequence.asc())
    )
    steps = list(result.scalars().all())

    result = await db.execute(
        select(ExternalWaitToken).where(ExternalWaitToken.execution_id == execution_id)
    )
    tokens = {token.step_execution_id: token for token in result.scalars().all()}

    subject = await db.get(WorkflowSubject, execution.subject_id)
    retry_count = subject.retry_count if subject is not None else 0

    stats = {status.value: 0 for status in StepStatus}
    step_views = []
    for step in steps:
        stats[step.status] = stats.get(step.status, 0) + 1
        token = tokens.get(step.id)
        blocked_by = None
        if token is not None and token.status in _BLOCKING_TOKEN_STATUSES:
            blocked_by = {
                "wait_token_id": token.id,
                "kind": token.kind,
                "external_ref": token.external_ref,
                "external_status": token.external_status,
                "status": token.status,
                "deadline": _iso(token.deadline),
                "signers": list(token.signers or []),
            }
        step_views.append({
            "id": step.id,
            "sequence": step.sequence,
            "node_id": step.node_id,
            "node_type": step.node_type,
            "status": step.status,
            "started_at": _iso(step.started_at),
            "completed_at": _iso(step.completed_at),
            "duration_ms": duration_ms(step.started_at, step.completed_at),
            "retry_count": retry_count,
            "error_message": step.error_message,
            "output_data": step.output_data,
            "blocked_by": blocked_by,
        })

    total = len(steps)
    completed = stats.get(StepStatus.COMPLETED.value, 0)
    completion = round(completed / total * 100, 1) if total else 0.0

    state = {
        "execution": {
            "id": execution.id,
            "definition_id": execution.definition_id,
            "definition_version": execution.definition_version,
            "subject_id": execution.subject_id,
            "status": execution.status,
            "current_node_id": execution.current_node_id,
            "started_at": _iso(execution.started_at),
            "completed_at": _iso(execution.completed_at),
            "duration_ms": duration_ms(execution.started_at, execution.completed_at),
            "error_message": execution.error_message,
            "retry_count": retry_count,
            "last_notified_tier": execution.last_notified_tier,
        },
        "steps": step_views,
        "stats": {"total": total, "by_status": stats},
        "completion_percentage": completion,
    }
    if include_context:
        state["context"] = execution.context or {}
    return state
