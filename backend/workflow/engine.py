"""
Workflow execution engine (step runner).

Drives one execution through its pinned definition a *turn* at a time:
visit the current node, append a step row, advance ``current_node_id``,
and either keep going (non-wait nodes) or stop (wait node, terminal
node, cancellation, or the per-turn transition cap). A turn only
*initiates* external work; long waits are persisted as ``waiting`` /
``waitingExternal`` and picked up again by the resume path.

Node handling:
- start:        seeds the context from the queue item's input data
- form:         FormProcessor result stored under ``form_results.<node>``
- notification: NotificationSink; failures are logged unless ``required``
- condition:    guards on outgoing edges decide the branch
- approval / signature: gateway initiation, wait token, execution waits
- end:          execution completes (no step row)

Every non-wait node picks its next edge the same way: guarded edges in
priority order, first true guard wins, then the unguarded default, else
``NoMatchingBranch``. A node with no outgoing edge is terminal.

Error policy:
- MalformedDefinition, NoMatchingBranch, InvalidExpression,
  EvaluationTimeout and GatewayRejected fail the execution (failed step
  row, errorMessage)
- GatewayUnavailable appends nothing, leaves the execution running at the
  same node and propagates so the dispatcher retries the queue item
"""

import copy
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional
from uuid import uuid4

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import (
    TERMINAL_EXECUTION_STATUSES,
    ExecutionStatus,
    JournalSeverity,
    NodeType,
    StepStatus,
    SubjectStatus,
    WaitKind,
    WaitTokenStatus,
)
from core.exceptions import (
    FATAL_EXECUTION_ERRORS,
    ConflictError,
    GatewayRejected,
    GatewayUnavailable,
    MalformedDefinition,
    NoMatchingBranch,
    NotFoundError,
    WorkflowError,
)
from core.logging_config import bound_execution
from core.utils import utc_now
from db.models.execution import WorkflowExecution
from db.models.queue_item import WorkflowQueueItem
from db.models.wait_token import ExternalWaitToken
from db.models.workflow import WorkflowDefinitionModel
from db.models.workflow_step import WorkflowStepExecution
from services.subject_service import SqlSubjectStore
from workflow import graph
from workflow.expressions import ConditionEvaluator, get_condition_evaluator
from workflow.gateways import (
    ApprovalGateway,
    ContextFormProcessor,
    FormProcessor,
    ManagerNotificationSink,
    NotificationSink,
    SignatureGateway,
    SubjectStore,
    WaitRequest,
    build_gateways,
)
from workflow.journal import ExecutionJournal
from workflow.state_machine import transition_execution, transition_step

logger = structlog.get_logger(__name__)


@dataclass
class TurnResult:
    """What one turn did to an execution."""
    execution_id: str
    status: str
    current_node_id: Optional[str] = None
    steps_appended: int = 0
    yielded: bool = False
    waiting_step_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "status": self.status,
            "current_node_id": self.current_node_id,
            "steps_appended": self.steps_appended,
            "yielded": self.yielded,
            "waiting_step_id": self.waiting_step_id,
            "error": self.error,
        }


class WorkflowEngine:
    """Runs turns of workflow executions against a database session."""

    def __init__(
        self,
        db: AsyncSession,
        approval_gateway: Optional[ApprovalGateway] = None,
        signature_gateway: Optional[SignatureGateway] = None,
        form_processor: Optional[FormProcessor] = None,
        notification_sink: Optional[NotificationSink] = None,
        subject_store: Optional[SubjectStore] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        max_transitions: Optional[int] = None,
    ):
        settings = get_settings()
        self.db = db
        self.settings = settings
        default_approval, default_signature = build_gateways(settings)
        self.approval_gateway = approval_gateway or default_approval
        self.signature_gateway = signature_gateway or default_signature
        self.form_processor = form_processor or ContextFormProcessor()
        self.notification_sink = notification_sink or ManagerNotificationSink(
            manager_emails=settings.manager_emails_list
        )
        self.subject_store = subject_store or SqlSubjectStore(db)
        self.evaluator = evaluator or get_condition_evaluator()
        self.max_transitions = max_transitions or settings.WORKFLOW_MAX_TRANSITIONS_PER_TURN
        self.journal = ExecutionJournal(db)
        self._definitions: dict[tuple[str, int], graph.WorkflowDefinition] = {}

    # ─── Entry points ──────────────────────────────────────

    async def run(self, item: WorkflowQueueItem) -> TurnResult:
        """Run one turn for a claimed queue item.

        Creates the execution on first claim; a re-claim of the same item
        (after a transient failure or a yielded turn) continues it.

        Raises:
            GatewayUnavailable: transient; the dispatcher should retry the item
        """
        execution = await self._execution_for(item)

        with bound_execution(execution.id, execution.subject_id):
            if execution.status in TERMINAL_EXECUTION_STATUSES:
                logger.info("Execution already terminal, nothing to run", status=execution.status)
                return self._result(execution)
            if execution.status == ExecutionStatus.WAITING.value:
                logger.info("Execution is waiting on an external decision", node_id=execution.current_node_id)
                return self._result(execution)

            try:
                definition = await self.load_definition(execution.definition_id, execution.definition_version)
                if execution.current_node_id is None:
                    execution.current_node_id = graph.start(definition).id
                    await self.db.commit()
            except MalformedDefinition as exc:
                await self._fail(execution, exc)
                return self._result(execution, error=exc.message)

            seed = item.input_data if item.execution_id is None else None
            return await self._run_turn(execution, definition, seed=seed)

    async def continue_from_wait(
        self,
        execution: WorkflowExecution,
        step: WorkflowStepExecution,
    ) -> TurnResult:
        """Leave a resumed wait node along the edge its decision selects, then run a turn."""
        with bound_execution(execution.id, execution.subject_id):
            try:
                definition = await self.load_definition(execution.definition_id, execution.definition_version)
                node = definition.node(step.node_id)
                target = self._next_node_id(definition, node, execution.context or {})
            except FATAL_EXECUTION_ERRORS as exc:
                await self._fail(execution, exc)
                return self._result(execution, error=exc.message)

            if target is None:
                await self._complete(execution, node.id)
                return self._result(execution)

            execution.current_node_id = target
            await self.db.commit()
            return await self._run_turn(execution, definition)

    async def cancel(self, execution_id: str, reason: str = "Cancelled by operator") -> WorkflowExecution:
        """Cancel a non-terminal execution.

        Pending wait tokens become ``cancelled`` and waiting steps ``skipped``.

        Raises:
            NotFoundError: unknown execution
            ConflictError: the execution is already terminal
        """
        execution = await self.get_execution(execution_id)
        now = utc_now()
        cancelled = await self.db.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == execution_id,
                WorkflowExecution.status.in_([
                    ExecutionStatus.QUEUED.value,
                    ExecutionStatus.RUNNING.value,
                    ExecutionStatus.WAITING.value,
                ]),
            )
            .values(
                status=ExecutionStatus.CANCELLED.value,
                completed_at=now,
                error_message=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if cancelled.rowcount != 1:
            execution = await self.get_execution(execution_id, refresh=True)
            raise ConflictError(f"Execution {execution_id} is already {execution.status}")

        await self.db.execute(
            update(ExternalWaitToken)
            .where(
                ExternalWaitToken.execution_id == execution_id,
                ExternalWaitToken.status == WaitTokenStatus.PENDING.value,
            )
            .values(status=WaitTokenStatus.CANCELLED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(WorkflowStepExecution)
            .where(
                WorkflowStepExecution.execution_id == execution_id,
                WorkflowStepExecution.status == StepStatus.WAITING_EXTERNAL.value,
            )
            .values(status=StepStatus.SKIPPED.value, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.subject_store.update(
            execution.subject_id,
            status=SubjectStatus.CANCELLED.value,
            execution_id=execution_id,
        )
        await self.journal.record_event(
            "execution_cancelled",
            reason,
            execution_id=execution_id,
            subject_id=execution.subject_id,
            severity=JournalSeverity.WARNING,
        )
        await self.db.commit()
        return await self.get_execution(execution_id, refresh=True)

    async def fail_execution(self, execution_id: str, error: str) -> Optional[WorkflowExecution]:
        """Fail a non-terminal execution from outside a turn (dead-lettered queue item)."""
        execution = await self.get_execution(execution_id, refresh=True)
        if execution.status in TERMINAL_EXECUTION_STATUSES:
            return execution
        await self._fail(execution, GatewayUnavailable(error), error_message=error)
        return execution

    # ─── Lookups ───────────────────────────────────────────

    async def get_execution(self, execution_id: str, refresh: bool = False) -> WorkflowExecution:
        execution = await self.db.get(WorkflowExecution, execution_id, populate_existing=refresh)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def execution_for_queue_item(self, item: WorkflowQueueItem) -> Optional[WorkflowExecution]:
        if item.execution_id:
            return await self.db.get(WorkflowExecution, item.execution_id)
        result = await self.db.execute(
            select(WorkflowExecution).where(WorkflowExecution.queue_item_id == item.id)
        )
        return result.scalar_one_or_none()

    async def load_definition(self, definition_id: str, version: int) -> graph.WorkflowDefinition:
        """Load and parse a pinned definition version.

        Raises:
            MalformedDefinition: missing, or no longer parseable
        """
        key = (definition_id, version)
        if key in self._definitions:
            return self._definitions[key]

        result = await self.db.execute(
            select(WorkflowDefinitionModel).where(
                WorkflowDefinitionModel.definition_id == definition_id,
                WorkflowDefinitionModel.version == version,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise MalformedDefinition(f"Definition {definition_id} v{version} does not exist")

        definition = graph.WorkflowDefinition.from_dict(row.to_graph_dict())
        self._definitions[key] = definition
        return definition

    async def _execution_for(self, item: WorkflowQueueItem) -> WorkflowExecution:
        execution = await self.execution_for_queue_item(item)
        if execution is not None:
            return execution
        if item.execution_id:
            raise NotFoundError(f"Execution {item.execution_id} for queue item {item.id} not found")

        now = utc_now()
        execution = WorkflowExecution(
            id=str(uuid4()),
            definition_id=item.definition_id,
            definition_version=item.definition_version,
            subject_id=item.subject_id,
            queue_item_id=item.id,
            status=ExecutionStatus.QUEUED.value,
            context={},
        )
        transition_execution(execution, ExecutionStatus.RUNNING)
        execution.started_at = now
        self.db.add(execution)
        await self.subject_store.update(
            item.subject_id,
            status=SubjectStatus.IN_PROGRESS.value,
            execution_id=execution.id,
        )
        await self.journal.record_event(
            "execution_started",
            f"Execution started for definition {item.definition_id} v{item.definition_version}",
            execution_id=execution.id,
            subject_id=item.subject_id,
            details={"queue_item_id": item.id},
        )
        await self.db.commit()
        return execution

    # ─── Turn loop ─────────────────────────────────────────

    async def _run_turn(
        self,
        execution: WorkflowExecution,
        definition: graph.WorkflowDefinition,
        seed: Optional[dict] = None,
    ) -> TurnResult:
        appended = 0

        while True:
            await self.db.refresh(execution, attribute_names=["status"])
            if execution.status != ExecutionStatus.RUNNING.value:
                logger.info("Turn stopped, execution no longer running", status=execution.status)
                return self._result(execution, steps_appended=appended)

            if appended >= self.max_transitions:
                logger.info("Transition cap reached, yielding", transitions=appended)
                return self._result(execution, steps_appended=appended, yielded=True)

            try:
                node = definition.node(execution.current_node_id)
            except MalformedDefinition as exc:
                await self._fail(execution, exc)
                return self._result(execution, steps_appended=appended, error=exc.message)

            if node.type == NodeType.END:
                await self._complete(execution, node.id)
                return self._result(execution, steps_appended=appended)

            if node.is_wait:
                step = await self._enter_wait(execution, node)
                if step.status == StepStatus.FAILED.value:
                    return self._result(execution, steps_appended=appended + 1, error=step.error_message)
                return self._result(execution, steps_appended=appended + 1, waiting_step_id=step.id)

            step = await self._visit(execution, definition, node, seed)
            appended += 1
            if step.status == StepStatus.FAILED.value:
                return self._result(execution, steps_appended=appended, error=step.error_message)
            if execution.status == ExecutionStatus.COMPLETED.value:
                return self._result(execution, steps_appended=appended)

    async def _visit(
        self,
        execution: WorkflowExecution,
        definition: graph.WorkflowDefinition,
        node: graph.WorkflowNode,
        seed: Optional[dict],
    ) -> WorkflowStepExecution:
        """Visit a non-wait node and move the execution past it."""
        context = copy.deepcopy(execution.context or {})
        step = await self._new_step(execution, node, context)

        try:
            output = await self._handle(execution, node, context, seed)
            target = self._next_node_id(definition, node, context)
        except GatewayUnavailable:
            logger.warning("Collaborator unavailable, step not recorded", node_id=node.id)
            raise
        except FATAL_EXECUTION_ERRORS as exc:
            transition_step(step, StepStatus.FAILED)
            step.error_message = f"{exc.error_code}: {exc.message}"
            step.completed_at = utc_now()
            self.db.add(step)
            await self._fail(execution, exc, node_id=node.id)
            return step

        transition_step(step, StepStatus.COMPLETED)
        step.output_data = output
        step.completed_at = utc_now()
        self.db.add(step)
        execution.context = context

        if target is None:
            await self._complete(execution, node.id)
            return step

        execution.current_node_id = target
        await self.subject_store.update(execution.subject_id, context_snapshot=context)
        await self.db.commit()
        logger.debug("Node visited", node_id=node.id, node_type=node.type.value, next_node_id=target)
        return step

    async def _handle(
        self,
        execution: WorkflowExecution,
        node: graph.WorkflowNode,
        context: dict,
        seed: Optional[dict],
    ) -> dict:
        """Run a node's side effect; mutates ``context`` and returns the step output."""
        if node.type == NodeType.START:
            if seed:
                context.update(copy.deepcopy(seed))
            return {"input_keys": sorted(context.keys())}

        if node.type == NodeType.FORM:
            config: graph.FormConfig = node.config
            result = await self.form_processor.process(node.id, config, context)
            path = config.output_key or f"form_results.{node.id}"
            _set_path(context, path, result)
            return {"output_key": path, "result": result}

        if node.type == NodeType.NOTIFICATION:
            return await self._notify(execution, node, context)

        if node.type == NodeType.CONDITION:
            return {}

        raise MalformedDefinition(f"Node '{node.id}' has unsupported type {node.type.value}")

    async def _notify(self, execution: WorkflowExecution, node: graph.WorkflowNode, context: dict) -> dict:
        config: graph.NotificationConfig = node.config
        metadata = {
            "title": config.title or "Credentialing workflow",
            "execution_id": execution.id,
            "subject_id": execution.subject_id,
            "node_id": node.id,
        }
        error: Optional[str] = None
        try:
            delivered = await self.notification_sink.send(config.recipient_rule, config.message, metadata)
        except GatewayUnavailable as exc:
            delivered, error = False, exc.message

        if not delivered:
            if config.required:
                raise GatewayUnavailable(
                    f"Required notification '{node.id}' to '{config.recipient_rule}' was not delivered"
                    + (f": {error}" if error else "")
                )
            logger.warning(
                "Notification not delivered",
                node_id=node.id,
                recipient_rule=config.recipient_rule,
                error=error,
            )

        notifications = context.setdefault("notifications", {})
        notifications[node.id] = {"delivered": delivered}
        return {"recipient_rule": config.recipient_rule, "delivered": delivered, "error": error}

    async def _enter_wait(self, execution: WorkflowExecution, node: graph.WorkflowNode) -> WorkflowStepExecution:
        """Initiate the external process, persist the wait token, pause the execution."""
        config: graph.WaitConfig = node.config
        context = copy.deepcopy(execution.context or {})
        step = await self._new_step(execution, node, context)

        request = WaitRequest(
            execution_id=execution.id,
            step_execution_id=step.id,
            subject_id=execution.subject_id,
            node_id=node.id,
            config=config,
            context=context,
        )
        try:
            if node.wait_kind == WaitKind.APPROVAL:
                receipt = await self.approval_gateway.initiate_approval(request)
                default_days = self.settings.WORKFLOW_APPROVAL_DEADLINE_DAYS
            else:
                receipt = await self.signature_gateway.initiate_signature(request)
                default_days = self.settings.WORKFLOW_SIGNATURE_EXPIRY_DAYS
        except GatewayRejected as exc:
            transition_step(step, StepStatus.FAILED)
            step.error_message = f"{exc.error_code}: {exc.message}"
            step.completed_at = utc_now()
            self.db.add(step)
            await self._fail(execution, exc, node_id=node.id)
            return step

        now = utc_now()
        transition_step(step, StepStatus.WAITING_EXTERNAL)
        step.output_data = receipt.to_output()
        self.db.add(step)
        # Step row must exist before the token that references it
        await self.db.flush()

        token = ExternalWaitToken(
            step_execution_id=step.id,
            execution_id=execution.id,
            kind=node.wait_kind.value,
            external_ref=receipt.correlation_ref,
            external_status=receipt.external_status,
            status=WaitTokenStatus.PENDING.value,
            signers=list(receipt.signers),
            deadline=now + timedelta(days=config.deadline_days or default_days),
        )
        self.db.add(token)

        transition_execution(execution, ExecutionStatus.WAITING)
        execution.current_node_id = node.id
        await self.subject_store.update(
            execution.subject_id,
            status=SubjectStatus.AWAITING_DECISION.value,
            context_snapshot=context,
        )
        await self.journal.record_event(
            "execution_waiting",
            f"Waiting for {node.wait_kind.value} at node '{node.id}'",
            execution_id=execution.id,
            subject_id=execution.subject_id,
            details={"step_execution_id": step.id, "correlation_ref": receipt.correlation_ref},
        )
        await self.db.commit()
        return step

    # ─── Branching ─────────────────────────────────────────

    def select_edge(
        self,
        node: graph.WorkflowNode,
        edges: list[graph.WorkflowEdge],
        context: dict,
    ) -> graph.WorkflowEdge:
        """First edge whose guard is true, in priority order; else the unguarded default.

        Raises:
            NoMatchingBranch: no guard matched and there is no default
            InvalidExpression / EvaluationTimeout: from the evaluator
        """
        default: Optional[graph.WorkflowEdge] = None
        for edge in edges:
            if edge.is_default:
                if default is None:
                    default = edge
                continue
            if self.evaluator.evaluate(edge.guard, context):
                return edge
        if default is not None:
            return default
        raise NoMatchingBranch(
            f"No outgoing edge of node '{node.id}' matched and it has no default edge"
        )

    def _next_node_id(
        self,
        definition: graph.WorkflowDefinition,
        node: graph.WorkflowNode,
        context: dict,
    ) -> Optional[str]:
        edges = graph.outgoing(definition, node.id)
        if not edges:
            return None
        edge = self.select_edge(node, edges, context)
        return definition.node(edge.target).id

    # ─── Terminal transitions ──────────────────────────────

    async def _complete(self, execution: WorkflowExecution, node_id: str) -> None:
        transition_execution(execution, ExecutionStatus.COMPLETED)
        execution.current_node_id = node_id
        execution.completed_at = utc_now()
        execution.error_message = None
        await self.subject_store.update(
            execution.subject_id,
            status=SubjectStatus.COMPLETED.value,
            execution_id=execution.id,
            context_snapshot=execution.context or {},
        )
        await self.journal.record_event(
            "execution_completed",
            f"Execution completed at node '{node_id}'",
            execution_id=execution.id,
            subject_id=execution.subject_id,
        )
        await self.db.commit()

    async def _fail(
        self,
        execution: WorkflowExecution,
        exc: WorkflowError,
        node_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        transition_execution(execution, ExecutionStatus.FAILED)
        execution.error_message = error_message or f"{exc.error_code}: {exc.message}"
        execution.completed_at = utc_now()
        await self.subject_store.update(
            execution.subject_id,
            status=SubjectStatus.FAILED.value,
            execution_id=execution.id,
            context_snapshot=execution.context or {},
        )
        await self.journal.record_event(
            "execution_failed",
            execution.error_message,
            execution_id=execution.id,
            subject_id=execution.subject_id,
            details={"node_id": node_id or execution.current_node_id, "error_code": exc.error_code},
            severity=JournalSeverity.ERROR,
        )
        await self.db.commit()

    # ─── Helpers ───────────────────────────────────────────

    async def _new_step(
        self,
        execution: WorkflowExecution,
        node: graph.WorkflowNode,
        context: dict,
    ) -> WorkflowStepExecution:
        result = await self.db.execute(
            select(func.max(WorkflowStepExecution.sequence)).where(
                WorkflowStepExecution.execution_id == execution.id
            )
        )
        sequence = (result.scalar() or 0) + 1
        step = WorkflowStepExecution(
            id=str(uuid4()),
            execution_id=execution.id,
            sequence=sequence,
            node_id=node.id,
            node_type=node.type.value,
            status=StepStatus.PENDING.value,
            input_snapshot=copy.deepcopy(context),
            started_at=utc_now(),
        )
        transition_step(step, StepStatus.RUNNING)
        return step

    @staticmethod
    def _result(execution: WorkflowExecution, **kwargs: Any) -> TurnResult:
        return TurnResult(
            execution_id=execution.id,
            status=execution.status,
            current_node_id=execution.current_node_id,
            **kwargs,
        )


def _set_path(target: dict, path: str, value: Any) -> None:
    """Assign ``value`` at a dot-path, creating intermediate maps."""
    parts = [p for p in path.split(".") if p]
    current = target
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value
