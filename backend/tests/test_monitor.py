"""Tests for the SLA / signature deadline monitor."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from core.constants import ExecutionStatus, SlaTier, StepStatus, SubjectStatus, WaitTokenStatus
from core.exceptions import NotAwaitingDecision
from core.utils import as_utc
from db.models.journal import WorkflowJournalEntry
from db.models.wait_token import ExternalWaitToken
from services.subject_service import SqlSubjectStore
from workflow.monitor import DeadlineMonitor, sla_tier
from workflow.resume import ResumeService

from tests.conftest import credentialing_definition, signature_definition


async def _journal_types(db_session, execution_id):
    result = await db_session.execute(
        select(WorkflowJournalEntry.event_type)
        .where(WorkflowJournalEntry.execution_id == execution_id)
        .order_by(WorkflowJournalEntry.created_at.asc())
    )
    return [row[0] for row in result.all()]


@pytest.mark.unit
class TestSlaTier:
    @pytest.mark.parametrize("hours,expected", [
        (0, SlaTier.NONE),
        (7.9, SlaTier.NONE),
        (8, SlaTier.WARNING_80),
        (8.99, SlaTier.WARNING_80),
        (9, SlaTier.WARNING_90),
        (10, SlaTier.BREACHED),
        (30, SlaTier.BREACHED),
    ])
    def test_tiers(self, hours, expected):
        assert sla_tier(timedelta(hours=hours), timedelta(hours=10)) == expected

    def test_zero_budget_is_breached(self):
        assert sla_tier(timedelta(0), timedelta(0)) == SlaTier.BREACHED

    def test_ranks_ascend(self):
        ranks = [t.rank for t in (SlaTier.NONE, SlaTier.WARNING_80, SlaTier.WARNING_90, SlaTier.BREACHED)]
        assert ranks == sorted(ranks)


# ─── SLA tiers ───

@pytest.mark.integration
class TestSlaMonitor:
    @pytest.fixture
    async def waiting_execution(self, publish, enqueue, run_queue, latest_execution):
        await publish(credentialing_definition(), sla_hours=10)
        await enqueue("insc-150", "credentialing", {"amount": 150, "cpf": "123"})
        await run_queue()
        return await latest_execution("insc-150")

    async def test_tier_notified_once(self, waiting_execution, db_session, sink):
        monitor = DeadlineMonitor(db_session, notification_sink=sink)
        started = as_utc(waiting_execution.started_at)

        first = await monitor.run(now=started + timedelta(hours=8.5))
        second = await monitor.run(now=started + timedelta(hours=8.6))

        assert first.sla_alerts == [{"execution_id": waiting_execution.id, "tier": "80"}]
        assert second.sla_alerts == []
        assert len(sink.to("alerts")) == 1
        assert sink.to("managers") == []

    async def test_tiers_escalate_in_order(self, waiting_execution, db_session, sink):
        monitor = DeadlineMonitor(db_session, notification_sink=sink)
        started = as_utc(waiting_execution.started_at)

        await monitor.run(now=started + timedelta(hours=8.5))
        await monitor.run(now=started + timedelta(hours=9.5))
        report = await monitor.run(now=started + timedelta(hours=11))

        assert report.escalations == [waiting_execution.id]
        assert [n["metadata"]["tier"] for n in sink.to("alerts")] == ["80", "90", "breached"]
        escalation = sink.to("managers")
        assert len(escalation) == 1
        assert escalation[0]["metadata"]["priority"] == "critical"

        await db_session.refresh(waiting_execution)
        assert waiting_execution.last_notified_tier == SlaTier.BREACHED.value
        types = await _journal_types(db_session, waiting_execution.id)
        assert types.count("sla_warning") == 2
        assert types.count("sla_breached") == 1

    async def test_jumping_straight_to_breach_notifies_once(self, waiting_execution, db_session, sink):
        monitor = DeadlineMonitor(db_session, notification_sink=sink)
        started = as_utc(waiting_execution.started_at)

        report = await monitor.run(now=started + timedelta(hours=20))
        again = await monitor.run(now=started + timedelta(hours=21))

        assert report.sla_alerts == [{"execution_id": waiting_execution.id, "tier": "breached"}]
        assert again.sla_alerts == []
        assert len(sink.to("alerts")) == 1
        assert len(sink.to("managers")) == 1

    async def test_terminal_executions_ignored(self, publish, enqueue, run_queue, latest_execution, db_session, sink):
        await publish(credentialing_definition(), sla_hours=1)
        await enqueue("insc-50", "credentialing", {"amount": 50})
        await run_queue()
        execution = await latest_execution("insc-50")

        report = await DeadlineMonitor(db_session, notification_sink=sink).run(
            now=as_utc(execution.started_at) + timedelta(days=30)
        )

        assert report.checked_executions == 0
        assert sink.sent == []

    async def test_undelivered_alert_is_still_claimed(self, waiting_execution, db_session):
        from tests.conftest import RecordingSink

        dead = RecordingSink(deliver=False)
        monitor = DeadlineMonitor(db_session, notification_sink=dead)
        started = as_utc(waiting_execution.started_at)

        await monitor.run(now=started + timedelta(hours=8.5))
        await monitor.run(now=started + timedelta(hours=8.6))

        assert len(dead.to("alerts")) == 1


# ─── Signature deadlines ───

@pytest.mark.integration
class TestSignatureDeadlines:
    @pytest.fixture
    async def signature_token(self, publish, enqueue, run_queue, db_session):
        await publish(signature_definition())
        await enqueue("prov-1", "contract")
        await run_queue()
        result = await db_session.execute(select(ExternalWaitToken))
        return result.scalar_one()

    async def test_warns_once_before_expiry(self, signature_token, db_session, sink):
        monitor = DeadlineMonitor(db_session, notification_sink=sink)
        created = as_utc(signature_token.created_at)

        first = await monitor.run(now=created + timedelta(days=5, hours=1))
        second = await monitor.run(now=created + timedelta(days=6))

        assert first.signature_warnings == [signature_token.id]
        assert second.signature_warnings == []
        assert len(sink.to("alerts")) == 1
        assert sink.to("alerts")[0]["metadata"]["signers"] == ["provider@example.com"]

        await db_session.refresh(signature_token)
        assert signature_token.alerted_at is not None
        assert signature_token.status == WaitTokenStatus.PENDING.value

    async def test_no_warning_before_threshold(self, signature_token, db_session, sink):
        report = await DeadlineMonitor(db_session, notification_sink=sink).run(
            now=as_utc(signature_token.created_at) + timedelta(days=4)
        )
        assert report.signature_warnings == []
        assert report.signatures_expired == []

    async def test_expires_and_fails_execution(
        self, signature_token, db_session, sink, latest_execution, steps_of
    ):
        monitor = DeadlineMonitor(db_session, notification_sink=sink)
        created = as_utc(signature_token.created_at)

        report = await monitor.run(now=created + timedelta(days=8))
        again = await monitor.run(now=created + timedelta(days=9))

        assert report.signatures_expired == [signature_token.id]
        assert again.signatures_expired == []

        await db_session.refresh(signature_token)
        assert signature_token.status == WaitTokenStatus.EXPIRED.value
        assert signature_token.external_status == "deadline_exceeded"

        execution = await latest_execution("prov-1")
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.error_message.startswith("SignatureExpired")
        step = (await steps_of(execution.id))[-1]
        assert step.status == StepStatus.FAILED.value

        subject = await SqlSubjectStore(db_session).get("prov-1")
        assert subject.status == SubjectStatus.FAILED.value
        assert (await _journal_types(db_session, execution.id)).count("signature_expired") == 1
        expired_alerts = [n for n in sink.to("alerts") if n["metadata"].get("title") == "Signature expired"]
        assert len(expired_alerts) == 1

    async def test_resume_after_expiry_rejected(self, signature_token, db_session, sink, engine):
        await DeadlineMonitor(db_session, notification_sink=sink).run(
            now=as_utc(signature_token.created_at) + timedelta(days=8)
        )

        with pytest.raises(NotAwaitingDecision):
            await ResumeService(db_session, engine=engine).resume(signature_token.step_execution_id, "signed")

    async def test_signed_token_not_expired(self, signature_token, db_session, sink, engine):
        await ResumeService(db_session, engine=engine).resume(signature_token.step_execution_id, "signed")

        report = await DeadlineMonitor(db_session, notification_sink=sink).run(
            now=as_utc(signature_token.created_at) + timedelta(days=8)
        )

        assert report.signatures_expired == []
        assert sink.sent == []


@pytest.mark.integration
class TestNodeSignatureDeadline:
    async def _token_for(self, publish, enqueue, run_queue, db_session, deadline_days):
        definition = signature_definition(f"contract-{deadline_days}")
        definition["nodes"][1]["config"]["deadline_days"] = deadline_days
        await publish(definition)
        await enqueue(f"prov-{deadline_days}", definition["definition_id"])
        await run_queue()
        return (await db_session.execute(select(ExternalWaitToken))).scalar_one()

    async def test_short_deadline_expires_before_default(self, publish, enqueue, run_queue, db_session, sink):
        token = await self._token_for(publish, enqueue, run_queue, db_session, 2)
        created = as_utc(token.created_at)
        assert as_utc(token.deadline) - created < timedelta(days=2, minutes=1)

        report = await DeadlineMonitor(db_session, notification_sink=sink).run(now=created + timedelta(days=3))

        assert report.signatures_expired == [token.id]

    async def test_long_deadline_outlives_default(self, publish, enqueue, run_queue, db_session, sink):
        token = await self._token_for(publish, enqueue, run_queue, db_session, 10)
        monitor = DeadlineMonitor(db_session, notification_sink=sink)
        created = as_utc(token.created_at)

        at_day_7 = await monitor.run(now=created + timedelta(days=7, hours=1))
        at_day_8 = await monitor.run(now=created + timedelta(days=8, hours=1))
        at_day_11 = await monitor.run(now=created + timedelta(days=11))

        assert at_day_7.signatures_expired == []
        assert at_day_7.signature_warnings == []
        assert at_day_8.signature_warnings == [token.id]
        assert at_day_11.signatures_expired == [token.id]

    async def test_warning_carries_expiry(self, publish, enqueue, run_queue, db_session, sink):
        token = await self._token_for(publish, enqueue, run_queue, db_session, 10)
        monitor = DeadlineMonitor(db_session, notification_sink=sink)

        expires_at, warn_at = monitor.signature_deadlines(token)

        assert expires_at == as_utc(token.deadline)
        assert expires_at - warn_at == timedelta(days=2)
        await monitor.run(now=warn_at + timedelta(minutes=1))
        assert sink.to("alerts")[0]["metadata"]["expires_at"] == expires_at.isoformat()
