"""
Resume path for paused executions.

An external decision (approval outcome, signature completion) arrives
with the step execution id the engine handed out when the wait node was
entered. The wait token is consumed exactly once: execution, token and
step move by compare-and-swap, so a second resume, a resume after the
monitor expired the signature, or a resume of a cancelled execution is
rejected with ``NotAwaitingDecision`` and writes nothing.

The decision becomes part of the context (``decision`` and
``decisions.<node_id>``) and the engine leaves the wait node through the
ordinary guard evaluation path.
"""

import copy
from typing import Any, Optional, Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import ExecutionStatus, JournalSeverity, StepStatus, WaitTokenStatus
from core.exceptions import GatewayUnavailable, NotAwaitingDecision, NotFoundError
from core.logging_config import bound_execution
from core.utils import utc_now
from db.models.execution import WorkflowExecution
from db.models.wait_token import ExternalWaitToken
from db.models.workflow_step import WorkflowStepExecution
from workflow.dispatcher import QueueDispatcher
from workflow.engine import WorkflowEngine
from workflow.journal import ExecutionJournal

logger = structlog.get_logger(__name__)

Decision = Union[str, dict]


def decision_outcome(decision: Decision) -> Optional[str]:
    """The outcome string guards compare against.

    ``"approved"`` and ``{"outcome": "approved", "comment": ...}`` both give
    ``"approved"``.
    """
    if isinstance(decision, str):
        return decision
    if isinstance(decision, dict):
        outcome = decision.get("outcome")
        return str(outcome) if outcome is not None else None
    return None


class ResumeService:
    """Apply external decisions to waiting steps."""

    def __init__(
        self,
        db: AsyncSession,
        engine: Optional[WorkflowEngine] = None,
        dispatcher: Optional[QueueDispatcher] = None,
    ):
        self.db = db
        self.engine = engine or WorkflowEngine(db)
        self.dispatcher = dispatcher or QueueDispatcher(db)
        self.journal = ExecutionJournal(db)

    async def resume(self, step_execution_id: str, decision: Decision) -> dict[str, Any]:
        """Consume the wait token of a waiting step and continue the execution.

        Rows are claimed in the order the cancel path takes them (execution,
        token, step), each by compare-and-swap; the first transition wins.
        When the continuation hits an unavailable collaborator, the turn is
        queued instead so the dispatcher retries it with backoff.

        Raises:
            NotFoundError: unknown step execution
            NotAwaitingDecision: the step, its token or its execution is no longer waiting
        """
        step = await self.db.get(WorkflowStepExecution, step_execution_id, populate_existing=True)
        if step is None:
            raise NotFoundError(f"Step execution {step_execution_id} not found")

        execution = await self.db.get(WorkflowExecution, step.execution_id, populate_existing=True)
        token = await self._token_for(step_execution_id)
        self._check_waiting(step, token, execution)
        execution_id = execution.id

        with bound_execution(execution_id, execution.subject_id):
            await self._claim_execution(step, execution_id)
            await self._consume(step, token, decision)

            # Reload what the CAS updates wrote
            step = await self.db.get(WorkflowStepExecution, step_execution_id, populate_existing=True)
            execution = await self.db.get(WorkflowExecution, execution_id, populate_existing=True)
            context = copy.deepcopy(execution.context or {})
            context["decision"] = decision_outcome(decision)
            decisions = context.setdefault("decisions", {})
            node_id = step.node_id
            decisions[node_id] = copy.deepcopy(decision)
            execution.context = context

            await self.journal.record_event(
                "decision_received",
                f"Decision '{context['decision']}' received for node '{node_id}'",
                execution_id=execution_id,
                subject_id=execution.subject_id,
                details={"step_execution_id": step.id},
            )
            await self.db.commit()

            try:
                result = await self.engine.continue_from_wait(execution, step)
            except GatewayUnavailable as exc:
                await self.db.rollback()
                execution = await self.db.get(WorkflowExecution, execution_id, populate_existing=True)
                await self.dispatcher.enqueue_continuation(execution)
                await self.journal.record_event(
                    "continuation_deferred",
                    f"Continuation after node '{node_id}' queued for retry: {exc.message}",
                    execution_id=execution_id,
                    subject_id=execution.subject_id,
                    details={"node_id": execution.current_node_id},
                    severity=JournalSeverity.WARNING,
                )
                await self.db.commit()
                logger.warning(
                    "Collaborator unavailable after resume, continuation queued",
                    node_id=execution.current_node_id,
                    error=exc.message,
                )
                return {"execution_id": execution_id, "status": execution.status}

            if result.yielded:
                await self.dispatcher.enqueue_continuation(execution)
                await self.db.commit()

            logger.info("Execution resumed", status=result.status, node_id=result.current_node_id)
            return {"execution_id": execution_id, "status": result.status}

    async def _token_for(self, step_execution_id: str) -> Optional[ExternalWaitToken]:
        result = await self.db.execute(
            select(ExternalWaitToken)
            .where(ExternalWaitToken.step_execution_id == step_execution_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _check_waiting(
        step: WorkflowStepExecution,
        token: Optional[ExternalWaitToken],
        execution: Optional[WorkflowExecution],
    ) -> None:
        if step.status != StepStatus.WAITING_EXTERNAL.value:
            raise NotAwaitingDecision(f"Step {step.id} is {step.status}, not awaiting a decision")
        if token is None or token.status != WaitTokenStatus.PENDING.value:
            state = token.status if token is not None else "missing"
            raise NotAwaitingDecision(f"Wait token for step {step.id} is {state}")
        if execution is None or execution.status != ExecutionStatus.WAITING.value:
            state = execution.status if execution is not None else "missing"
            raise NotAwaitingDecision(f"Execution for step {step.id} is {state}")

    async def _claim_execution(self, step: WorkflowStepExecution, execution_id: str) -> None:
        claimed = await self.db.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == execution_id,
                WorkflowExecution.status == ExecutionStatus.WAITING.value,
            )
            .values(status=ExecutionStatus.RUNNING.value, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            step_id = step.id
            await self.db.rollback()
            raise NotAwaitingDecision(f"Execution for step {step_id} left waiting concurrently")

    async def _consume(
        self,
        step: WorkflowStepExecution,
        token: ExternalWaitToken,
        decision: Decision,
    ) -> None:
        now = utc_now()
        consumed = await self.db.execute(
            update(ExternalWaitToken)
            .where(
                ExternalWaitToken.id == token.id,
                ExternalWaitToken.status == WaitTokenStatus.PENDING.value,
            )
            .values(
                status=WaitTokenStatus.CONSUMED.value,
                external_status=decision_outcome(decision) or "decided",
                consumed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            step_id = step.id
            await self.db.rollback()
            raise NotAwaitingDecision(f"Wait token for step {step_id} was already consumed")

        output = dict(step.output_data or {})
        output["decision"] = copy.deepcopy(decision)
        completed = await self.db.execute(
            update(WorkflowStepExecution)
            .where(
                WorkflowStepExecution.id == step.id,
                WorkflowStepExecution.status == StepStatus.WAITING_EXTERNAL.value,
            )
            .values(
                status=StepStatus.COMPLETED.value,
                output_data=output,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if completed.rowcount != 1:
            step_id, execution_id = step.id, step.execution_id
            await self.db.rollback()
            await self.journal.record_event(
                "resume_rejected",
                f"Step {step_id} left waitingExternal concurrently",
                execution_id=execution_id,
                details={"step_execution_id": step_id},
                severity=JournalSeverity.WARNING,
            )
            await self.db.commit()
            raise NotAwaitingDecision(f"Step {step_id} is no longer awaiting a decision")
