"""Tests for the workflow engine: turns, branching, waits, error policy, cancel."""

from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select

from core.constants import ExecutionStatus, StepStatus, SubjectStatus, WaitTokenStatus
from core.exceptions import ConflictError, NoMatchingBranch, NotFoundError
from db.models.journal import WorkflowJournalEntry
from db.models.wait_token import ExternalWaitToken
from db.models.workflow_step import WorkflowStepExecution
from services.subject_service import SqlSubjectStore
from worker.tasks.workflow import process_queue_items
from workflow import graph
from workflow.engine import WorkflowEngine
from workflow.gateways import HttpGateway
from workflow.resume import ResumeService

from tests.conftest import (
    FakeApprovalGateway,
    RecordingSink,
    credentialing_definition,
    signature_definition,
)


def _branching_definition(edges, definition_id="branching"):
    return {
        "definition_id": definition_id,
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "check", "type": "condition"},
            {"id": "a", "type": "end"},
            {"id": "b", "type": "end"},
            {"id": "c", "type": "end"},
        ],
        "edges": [{"id": "s", "source": "start", "target": "check"}] + edges,
    }


async def _token_for(db_session, step_id):
    result = await db_session.execute(
        select(ExternalWaitToken)
        .where(ExternalWaitToken.step_execution_id == step_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


# ─── Credentialing scenario ───

@pytest.mark.integration
class TestCredentialingScenario:
    async def test_heavy_branch_waits_for_approval(
        self, publish, enqueue, run_queue, latest_execution, steps_of, approval_gateway, db_session
    ):
        await publish(credentialing_definition())
        await enqueue("insc-150", "credentialing", {"amount": 150, "cpf": "123"})

        summary = await run_queue()

        assert summary["processed"] == 1
        assert summary["completed"] == 1
        execution = await latest_execution("insc-150")
        assert execution.status == ExecutionStatus.WAITING.value
        assert execution.current_node_id == "approval"

        steps = await steps_of(execution.id)
        assert [s.node_id for s in steps] == ["start", "form", "condition", "approval"]
        assert [s.sequence for s in steps] == [1, 2, 3, 4]
        assert steps[-1].status == StepStatus.WAITING_EXTERNAL.value
        assert steps[-1].output_data["correlation_ref"] == f"apr-{steps[-1].id}"

        assert len(approval_gateway.requests) == 1
        assert approval_gateway.requests[0].config.assignees == ("analyst-1",)

        token = await _token_for(db_session, steps[-1].id)
        assert token.status == WaitTokenStatus.PENDING.value
        assert token.signers == ["analyst-1"]
        assert token.deadline is not None

        subject = await SqlSubjectStore(db_session).get("insc-150")
        assert subject.status == SubjectStatus.AWAITING_DECISION.value
        assert subject.workflow_execution_id == execution.id

    async def test_approval_completes_with_four_steps(
        self, publish, enqueue, run_queue, latest_execution, steps_of, engine, db_session
    ):
        await publish(credentialing_definition())
        await enqueue("insc-150", "credentialing", {"amount": 150, "cpf": "123"})
        await run_queue()
        execution = await latest_execution("insc-150")
        approval_step = (await steps_of(execution.id))[-1]

        result = await ResumeService(db_session, engine=engine).resume(approval_step.id, "approved")

        assert result["status"] == ExecutionStatus.COMPLETED.value
        execution = await latest_execution("insc-150")
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.current_node_id == "end"
        assert execution.completed_at is not None
        assert execution.context["decision"] == "approved"
        assert execution.context["decisions"]["approval"] == "approved"

        steps = await steps_of(execution.id)
        assert [s.node_id for s in steps] == ["start", "form", "condition", "approval"]
        assert all(s.status == StepStatus.COMPLETED.value for s in steps)
        assert steps[-1].output_data["decision"] == "approved"

        subject = await SqlSubjectStore(db_session).get("insc-150")
        assert subject.status == SubjectStatus.COMPLETED.value

    async def test_rejection_takes_default_edge(
        self, publish, enqueue, run_queue, latest_execution, steps_of, engine, db_session
    ):
        await publish(credentialing_definition())
        await enqueue("insc-150", "credentialing", {"amount": 150, "cpf": "123"})
        await run_queue()
        execution = await latest_execution("insc-150")
        approval_step = (await steps_of(execution.id))[-1]

        await ResumeService(db_session, engine=engine).resume(
            approval_step.id, {"outcome": "rejected", "comment": "missing license"}
        )

        execution = await latest_execution("insc-150")
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.current_node_id == "rejected"
        assert execution.context["decisions"]["approval"]["comment"] == "missing license"

    async def test_light_branch_skips_approval(
        self, publish, enqueue, run_queue, latest_execution, steps_of, approval_gateway
    ):
        await publish(credentialing_definition())
        await enqueue("insc-50", "credentialing", {"amount": 50, "cpf": "123"})

        await run_queue()

        execution = await latest_execution("insc-50")
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.current_node_id == "light_end"
        steps = await steps_of(execution.id)
        assert [s.node_id for s in steps] == ["start", "form", "condition"]
        assert approval_gateway.requests == []

    async def test_context_carries_input_and_form_result(
        self, publish, enqueue, run_queue, latest_execution, steps_of
    ):
        await publish(credentialing_definition())
        await enqueue("insc-50", "credentialing", {"amount": 50})

        await run_queue()

        execution = await latest_execution("insc-50")
        assert execution.context["amount"] == 50
        form_result = execution.context["form_results"]["form"]
        assert form_result["missing_fields"] == ["cpf"]
        assert form_result["complete"] is False

        steps = await steps_of(execution.id)
        assert steps[0].input_snapshot == {}
        assert steps[1].input_snapshot == {"amount": 50}

    async def test_journal_records_lifecycle(
        self, publish, enqueue, run_queue, latest_execution, db_session
    ):
        await publish(credentialing_definition())
        await enqueue("insc-50", "credentialing", {"amount": 50})
        await run_queue()
        execution = await latest_execution("insc-50")

        result = await db_session.execute(
            select(WorkflowJournalEntry.event_type)
            .where(WorkflowJournalEntry.execution_id == execution.id)
            .order_by(WorkflowJournalEntry.created_at.asc())
        )
        assert [row[0] for row in result.all()] == ["execution_started", "execution_completed"]


# ─── Branch selection ───

@pytest.mark.integration
class TestBranching:
    async def test_lowest_priority_wins_when_guards_tie(
        self, publish, enqueue, run_queue, latest_execution
    ):
        await publish(_branching_definition([
            {"id": "late", "source": "check", "target": "b", "guard": "amount > 0", "priority": 5},
            {"id": "early", "source": "check", "target": "a", "guard": "amount > 0", "priority": 1},
            {"id": "fallback", "source": "check", "target": "c"},
        ]))
        await enqueue("s-1", "branching", {"amount": 1})

        await run_queue()

        assert (await latest_execution("s-1")).current_node_id == "a"

    async def test_default_edge_taken_when_no_guard_matches(
        self, publish, enqueue, run_queue, latest_execution
    ):
        await publish(_branching_definition([
            {"id": "fallback", "source": "check", "target": "c"},
            {"id": "big", "source": "check", "target": "a", "guard": "amount > 100"},
            {"id": "mid", "source": "check", "target": "b", "guard": "amount > 50"},
        ]))
        await enqueue("s-1", "branching", {"amount": 1})

        await run_queue()

        assert (await latest_execution("s-1")).current_node_id == "c"

    async def test_no_matching_branch_fails_execution(
        self, publish, enqueue, run_queue, latest_execution, steps_of
    ):
        await publish(_branching_definition([
            {"id": "big", "source": "check", "target": "a", "guard": "amount > 100"},
            {"id": "huge", "source": "check", "target": "b", "guard": "amount > 1000"},
            {"id": "other", "source": "start", "target": "c", "guard": "amount < 0"},
        ]))
        await enqueue("s-1", "branching", {"amount": 1})

        summary = await run_queue()

        assert summary["completed"] == 1
        execution = await latest_execution("s-1")
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.error_message.startswith("NoMatchingBranch")
        steps = await steps_of(execution.id)
        assert steps[-1].node_id == "check"
        assert steps[-1].status == StepStatus.FAILED.value

    async def test_select_edge_directly(self, engine):
        definition = graph.WorkflowDefinition.from_dict({"id": "b", **_branching_definition([
            {"id": "big", "source": "check", "target": "a", "guard": "amount > 100"},
        ])})
        node = definition.node("check")
        edges = graph.outgoing(definition, "check")
        assert engine.select_edge(node, edges, {"amount": 101}).id == "big"
        with pytest.raises(NoMatchingBranch):
            engine.select_edge(node, edges, {"amount": 1})


# ─── Transient failures and the turn cap ───

@pytest.mark.integration
class TestTransientFailures:
    async def test_gateway_outage_is_retried_without_duplicate_steps(
        self, publish, enqueue, latest_execution, steps_of, db_session, dispatcher, sink, signature_gateway
    ):
        flaky = FakeApprovalGateway(fail_times=1)
        engine = WorkflowEngine(
            db_session,
            approval_gateway=flaky,
            signature_gateway=signature_gateway,
            notification_sink=sink,
        )
        await publish(credentialing_definition())
        item = await enqueue("insc-150", "credentialing", {"amount": 150, "cpf": "123"})

        summary = await process_queue_items(db_session, max_items=5, engine=engine, dispatcher=dispatcher)

        assert summary["retrying"] == 1
        assert summary["completed"] == 1
        execution = await latest_execution("insc-150")
        assert execution.status == ExecutionStatus.WAITING.value
        steps = await steps_of(execution.id)
        assert [s.node_id for s in steps] == ["start", "form", "condition", "approval"]
        settled = await dispatcher.get(item.id, refresh=True)
        assert settled.attempts == 1

    async def test_dead_lettered_item_fails_execution(
        self, publish, enqueue, latest_execution, steps_of, db_session, dispatcher, sink, signature_gateway
    ):
        down = FakeApprovalGateway(fail_times=10)
        engine = WorkflowEngine(
            db_session,
            approval_gateway=down,
            signature_gateway=signature_gateway,
            notification_sink=sink,
        )
        await publish(credentialing_definition())
        await enqueue("insc-150", "credentialing", {"amount": 150, "cpf": "123"})

        summary = await process_queue_items(db_session, max_items=10, engine=engine, dispatcher=dispatcher)

        assert summary["dead_lettered"] == 1
        execution = await latest_execution("insc-150")
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.error_message == "GatewayUnavailable: approval service down"
        steps = await steps_of(execution.id)
        assert [s.node_id for s in steps] == ["start", "form", "condition"]

    async def test_required_notification_failure_is_retryable(
        self, publish, enqueue, latest_execution, steps_of, db_session, dispatcher, approval_gateway, signature_gateway
    ):
        await publish({
            "definition_id": "notify",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "tell", "type": "notification",
                 "config": {"recipient_rule": "managers", "message": "hi", "required": True}},
                {"id": "end", "type": "end"},
            ],
            "edges": [{"source": "start", "target": "tell"}, {"source": "tell", "target": "end"}],
        })
        engine = WorkflowEngine(
            db_session,
            approval_gateway=approval_gateway,
            signature_gateway=signature_gateway,
            notification_sink=RecordingSink(deliver=False),
        )
        await enqueue("s-1", "notify")

        summary = await process_queue_items(db_session, max_items=10, engine=engine, dispatcher=dispatcher)

        assert summary["dead_lettered"] == 1
        execution = await latest_execution("s-1")
        assert execution.status == ExecutionStatus.FAILED.value
        assert [s.node_id for s in await steps_of(execution.id)] == ["start"]

    async def test_optional_notification_failure_is_recorded(
        self, publish, enqueue, latest_execution, db_session, dispatcher, approval_gateway, signature_gateway
    ):
        await publish({
            "definition_id": "notify",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "tell", "type": "notification", "config": {"recipient_rule": "managers", "message": "hi"}},
                {"id": "end", "type": "end"},
            ],
            "edges": [{"source": "start", "target": "tell"}, {"source": "tell", "target": "end"}],
        })
        engine = WorkflowEngine(
            db_session,
            approval_gateway=approval_gateway,
            signature_gateway=signature_gateway,
            notification_sink=RecordingSink(deliver=False),
        )
        await enqueue("s-1", "notify")

        await process_queue_items(db_session, engine=engine, dispatcher=dispatcher)

        execution = await latest_execution("s-1")
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.context["notifications"]["tell"] == {"delivered": False}

    async def test_transition_cap_yields_and_requeues(
        self, publish, enqueue, latest_execution, steps_of, db_session, dispatcher, approval_gateway, signature_gateway, sink
    ):
        engine = WorkflowEngine(
            db_session,
            approval_gateway=approval_gateway,
            signature_gateway=signature_gateway,
            notification_sink=sink,
            max_transitions=2,
        )
        await publish(credentialing_definition())
        await enqueue("insc-50", "credentialing", {"amount": 50})

        first = await process_queue_items(db_session, max_items=1, engine=engine, dispatcher=dispatcher)

        assert first["requeued"] == 1
        execution = await latest_execution("insc-50")
        assert execution.status == ExecutionStatus.RUNNING.value
        assert execution.current_node_id == "condition"
        assert len(await steps_of(execution.id)) == 2

        second = await process_queue_items(db_session, max_items=1, engine=engine, dispatcher=dispatcher)

        assert second["completed"] == 1
        execution = await latest_execution("insc-50")
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert [s.node_id for s in await steps_of(execution.id)] == ["start", "form", "condition"]

    async def test_missing_definition_version_fails_execution(
        self, publish, latest_execution, db_session, dispatcher, run_queue
    ):
        await publish(credentialing_definition())
        await dispatcher.enqueue(
            subject_id="s-9", definition_id="credentialing", definition_version=99, input_data={}
        )
        await db_session.commit()

        await run_queue()

        execution = await latest_execution("s-9")
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.error_message.startswith("MalformedDefinition")


# ─── Signatures ───

@pytest.mark.integration
class TestSignatureWait:
    async def test_signature_wait_uses_expiry_deadline(
        self, publish, enqueue, run_queue, latest_execution, steps_of, signature_gateway, db_session
    ):
        await publish(signature_definition())
        await enqueue("prov-1", "contract")

        await run_queue()

        execution = await latest_execution("prov-1")
        assert execution.status == ExecutionStatus.WAITING.value
        step = (await steps_of(execution.id))[-1]
        assert step.node_type == "signature"
        token = await _token_for(db_session, step.id)
        assert token.kind == "signature"
        assert token.external_status == "sent"
        assert token.signers == ["provider@example.com"]
        assert abs((token.deadline - token.created_at) - timedelta(days=7)) < timedelta(minutes=1)
        assert len(signature_gateway.requests) == 1


# ─── Cancel ───

@pytest.mark.integration
class TestCancel:
    async def test_cancel_waiting_execution(
        self, publish, enqueue, run_queue, latest_execution, steps_of, engine, db_session
    ):
        await publish(credentialing_definition())
        await enqueue("insc-150", "credentialing", {"amount": 150, "cpf": "123"})
        await run_queue()
        execution = await latest_execution("insc-150")

        cancelled = await engine.cancel(execution.id, reason="Subject withdrew")

        assert cancelled.status == ExecutionStatus.CANCELLED.value
        assert cancelled.error_message == "Subject withdrew"
        step = (await steps_of(execution.id))[-1]
        assert step.status == StepStatus.SKIPPED.value
        token = await _token_for(db_session, step.id)
        assert token.status == WaitTokenStatus.CANCELLED.value
        subject = await SqlSubjectStore(db_session).get("insc-150")
        assert subject.status == SubjectStatus.CANCELLED.value

    async def test_cancel_terminal_execution_conflicts(
        self, publish, enqueue, run_queue, latest_execution, engine
    ):
        await publish(credentialing_definition())
        await enqueue("insc-50", "credentialing", {"amount": 50})
        await run_queue()
        execution = await latest_execution("insc-50")

        with pytest.raises(ConflictError):
            await engine.cancel(execution.id)

    async def test_cancel_unknown_execution(self, engine):
        with pytest.raises(NotFoundError):
            await engine.cancel("missing")

    async def test_cancelled_execution_cannot_resume(
        self, publish, enqueue, run_queue, latest_execution, steps_of, engine, db_session
    ):
        from core.exceptions import NotAwaitingDecision

        await publish(credentialing_definition())
        await enqueue("insc-150", "credentialing", {"amount": 150, "cpf": "123"})
        await run_queue()
        execution = await latest_execution("insc-150")
        step_id = (await steps_of(execution.id))[-1].id
        await engine.cancel(execution.id)

        with pytest.raises(NotAwaitingDecision):
            await ResumeService(db_session, engine=engine).resume(step_id, "approved")

        count = await db_session.scalar(
            select(func.count()).select_from(WorkflowStepExecution)
            .where(WorkflowStepExecution.execution_id == execution.id)
        )
        assert count == 4


@pytest.mark.integration
class TestRejectedGatewayRequest:
    async def test_client_error_fails_without_retry(
        self, publish, enqueue, latest_execution, steps_of, db_session, dispatcher, sink, approval_gateway
    ):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(422, text="unknown signer")

        engine = WorkflowEngine(
            db_session,
            approval_gateway=approval_gateway,
            signature_gateway=HttpGateway("https://sign.example.com", transport=httpx.MockTransport(handler)),
            notification_sink=sink,
        )
        await publish(signature_definition())
        item = await enqueue("prov-1", "contract")

        summary = await process_queue_items(db_session, max_items=5, engine=engine, dispatcher=dispatcher)

        assert summary["completed"] == 1
        assert summary["retrying"] == 0
        assert calls == ["/signatures"]
        execution = await latest_execution("prov-1")
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.error_message.startswith("GatewayRejected")
        steps = await steps_of(execution.id)
        assert [(s.node_id, s.status) for s in steps] == [
            ("start", StepStatus.COMPLETED.value),
            ("sign", StepStatus.FAILED.value),
        ]
        settled = await dispatcher.get(item.id, refresh=True)
        assert settled.attempts == 0
        tokens = await db_session.scalar(select(func.count()).select_from(ExternalWaitToken))
        assert tokens == 0
