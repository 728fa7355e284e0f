"""Allowed status transitions for executions and steps.

Status changes the engine makes on loaded rows go through
``transition_execution`` / ``transition_step``, so an illegal move (a
terminal execution restarting, a consumed step waiting again) raises
instead of being written. The resume, cancel and monitor paths write with
compare-and-swap updates guarded on the current status instead.
"""

from core.constants import ExecutionStatus, StepStatus
from core.exceptions import InvalidTransition

EXECUTION_TRANSITIONS: dict[str, frozenset[str]] = {
    ExecutionStatus.QUEUED.value: frozenset({
        ExecutionStatus.RUNNING.value,
        ExecutionStatus.FAILED.value,
        ExecutionStatus.CANCELLED.value,
    }),
    ExecutionStatus.RUNNING.value: frozenset({
        ExecutionStatus.WAITING.value,
        ExecutionStatus.COMPLETED.value,
        ExecutionStatus.FAILED.value,
        ExecutionStatus.CANCELLED.value,
    }),
    ExecutionStatus.WAITING.value: frozenset({
        ExecutionStatus.RUNNING.value,
        ExecutionStatus.FAILED.value,
        ExecutionStatus.CANCELLED.value,
    }),
    ExecutionStatus.COMPLETED.value: frozenset(),
    ExecutionStatus.FAILED.value: frozenset(),
    ExecutionStatus.CANCELLED.value: frozenset(),
}

STEP_TRANSITIONS: dict[str, frozenset[str]] = {
    StepStatus.PENDING.value: frozenset({
        StepStatus.RUNNING.value,
        StepStatus.SKIPPED.value,
    }),
    StepStatus.RUNNING.value: frozenset({
        StepStatus.COMPLETED.value,
        StepStatus.FAILED.value,
        StepStatus.WAITING_EXTERNAL.value,
    }),
    StepStatus.WAITING_EXTERNAL.value: frozenset({
        StepStatus.COMPLETED.value,
        StepStatus.FAILED.value,
        StepStatus.SKIPPED.value,
    }),
    StepStatus.COMPLETED.value: frozenset(),
    StepStatus.FAILED.value: frozenset(),
    StepStatus.SKIPPED.value: frozenset(),
}


def can_transition_execution(current: str, target: str) -> bool:
    return target in EXECUTION_TRANSITIONS.get(current, frozenset())


def can_transition_step(current: str, target: str) -> bool:
    return target in STEP_TRANSITIONS.get(current, frozenset())


def transition_execution(execution, target: ExecutionStatus) -> None:
    """Set an execution's status, enforcing the transition table."""
    value = ExecutionStatus(target).value
    if not can_transition_execution(execution.status, value):
        raise InvalidTransition("execution", execution.status, value)
    execution.status = value


def transition_step(step, target: StepStatus) -> None:
    """Set a step's status, enforcing the transition table."""
    value = StepStatus(target).value
    if not can_transition_step(step.status, value):
        raise InvalidTransition("step", step.status, value)
    step.status = value
