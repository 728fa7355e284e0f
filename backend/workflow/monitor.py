"""
Deadline and escalation monitor.

Runs out of band (Celery beat) over persisted state:

- SLA tiers: elapsed time of every running or waiting execution against
  its budget (definition ``sla_hours`` or ``WORKFLOW_SLA_DAYS``). A tier
  is notified only when it is higher than ``last_notified_tier``; a breach
  is additionally escalated to managers.
- Signature tokens: a pending signature expires at its own deadline (set
  from the node's ``deadline_days`` when it was entered) and its execution
  fails. It warns once (``alerted_at``) the alert lead time before that.

Every state change is a compare-and-swap, so two overlapping monitor runs
(or a monitor run racing a resume) notify and expire at most once.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import inspect, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import (
    ExecutionStatus,
    JournalSeverity,
    SlaTier,
    StepStatus,
    SubjectStatus,
    WaitKind,
    WaitTokenStatus,
)
from core.exceptions import GatewayUnavailable
from core.utils import as_utc, utc_now
from db.models.execution import WorkflowExecution
from db.models.wait_token import ExternalWaitToken
from db.models.workflow import WorkflowDefinitionModel
from db.models.workflow_step import WorkflowStepExecution
from services.subject_service import SqlSubjectStore
from workflow.gateways import ManagerNotificationSink, NotificationSink
from workflow.journal import ExecutionJournal

logger = structlog.get_logger(__name__)

ALERT_RECIPIENT_RULE = "alerts"
ESCALATION_RECIPIENT_RULE = "managers"


def sla_tier(elapsed: timedelta, budget: timedelta) -> SlaTier:
    """Tier for the fraction of the budget already used."""
    if budget.total_seconds() <= 0:
        return SlaTier.BREACHED
    ratio = elapsed / budget
    if ratio >= 1.0:
        return SlaTier.BREACHED
    if ratio >= 0.9:
        return SlaTier.WARNING_90
    if ratio >= 0.8:
        return SlaTier.WARNING_80
    return SlaTier.NONE


@dataclass
class MonitorReport:
    """What one monitor pass did."""
    checked_executions: int = 0
    sla_alerts: list[dict] = field(default_factory=list)
    escalations: list[str] = field(default_factory=list)
    signature_warnings: list[str] = field(default_factory=list)
    signatures_expired: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked_executions": self.checked_executions,
            "sla_alerts": list(self.sla_alerts),
            "escalations": list(self.escalations),
            "signature_warnings": list(self.signature_warnings),
            "signatures_expired": list(self.signatures_expired),
        }


class DeadlineMonitor:
    """Scan executions and signature tokens for deadline events."""

    def __init__(self, db: AsyncSession, notification_sink: Optional[NotificationSink] = None):
        settings = get_settings()
        self.db = db
        self.sink = notification_sink or ManagerNotificationSink(
            manager_emails=settings.manager_emails_list
        )
        self.default_sla = timedelta(days=settings.WORKFLOW_SLA_DAYS)
        self.signature_alert_after = timedelta(days=settings.WORKFLOW_SIGNATURE_ALERT_DAYS)
        self.signature_expire_after = timedelta(days=settings.WORKFLOW_SIGNATURE_EXPIRY_DAYS)
        self.journal = ExecutionJournal(db)
        self.subjects = SqlSubjectStore(db)

    async def run(self, now: Optional[datetime] = None) -> MonitorReport:
        now = now or utc_now()
        report = MonitorReport()
        await self.check_signatures(now, report)
        await self.check_sla(now, report)
        logger.info(
            "Deadline monitor pass finished",
            checked=report.checked_executions,
            sla_alerts=len(report.sla_alerts),
            escalations=len(report.escalations),
            signature_warnings=len(report.signature_warnings),
            signatures_expired=len(report.signatures_expired),
        )
        return report

    # ─── SLA ───────────────────────────────────────────────

    async def check_sla(self, now: datetime, report: MonitorReport) -> None:
        result = await self.db.execute(
            select(WorkflowExecution).where(
                WorkflowExecution.status.in_([
                    ExecutionStatus.RUNNING.value,
                    ExecutionStatus.WAITING.value,
                ])
            )
            .execution_options(populate_existing=True)
        )
        executions = list(result.scalars().all())
        budgets = await self._sla_budgets({(e.definition_id, e.definition_version) for e in executions})

        for execution in executions:
            report.checked_executions += 1
            started = as_utc(execution.started_at) or as_utc(execution.created_at)
            budget = budgets.get((execution.definition_id, execution.definition_version), self.default_sla)
            tier = sla_tier(now - started, budget)
            previous = SlaTier(execution.last_notified_tier or SlaTier.NONE.value)
            if tier.rank <= previous.rank:
                continue

            claimed = await self.db.execute(
                update(WorkflowExecution)
                .where(
                    WorkflowExecution.id == execution.id,
                    WorkflowExecution.last_notified_tier == previous.value,
                )
                .values(last_notified_tier=tier.value, last_notified_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                continue

            elapsed_days = (now - started).total_seconds() / 86400
            message = (
                f"Workflow for subject {execution.subject_id} has used "
                f"{'all' if tier == SlaTier.BREACHED else tier.value + '%'} of its SLA "
                f"({elapsed_days:.1f} days elapsed)"
            )
            metadata = {
                "title": "Workflow SLA breached" if tier == SlaTier.BREACHED else "Workflow SLA warning",
                "execution_id": execution.id,
                "subject_id": execution.subject_id,
                "tier": tier.value,
            }
            await self._notify(ALERT_RECIPIENT_RULE, message, metadata)
            if tier == SlaTier.BREACHED:
                await self._notify(ESCALATION_RECIPIENT_RULE, message, {**metadata, "priority": "critical"})
                report.escalations.append(execution.id)

            await self.journal.record_event(
                "sla_breached" if tier == SlaTier.BREACHED else "sla_warning",
                message,
                execution_id=execution.id,
                subject_id=execution.subject_id,
                details={"tier": tier.value, "previous_tier": previous.value},
                severity=JournalSeverity.ERROR if tier == SlaTier.BREACHED else JournalSeverity.WARNING,
            )
            await self.db.commit()
            report.sla_alerts.append({"execution_id": execution.id, "tier": tier.value})

    async def _sla_budgets(self, keys: set[tuple[str, int]]) -> dict[tuple[str, int], timedelta]:
        budgets: dict[tuple[str, int], timedelta] = {}
        if not keys:
            return budgets
        result = await self.db.execute(
            select(WorkflowDefinitionModel).where(
                WorkflowDefinitionModel.definition_id.in_({k[0] for k in keys})
            )
        )
        for row in result.scalars().all():
            key = (row.definition_id, row.version)
            if key in keys and row.sla_hours:
                budgets[key] = timedelta(hours=row.sla_hours)
        return budgets

    # ─── Signatures ────────────────────────────────────────

    async def check_signatures(self, now: datetime, report: MonitorReport) -> None:
        result = await self.db.execute(
            select(ExternalWaitToken).where(
                ExternalWaitToken.kind == WaitKind.SIGNATURE.value,
                ExternalWaitToken.status == WaitTokenStatus.PENDING.value,
            )
            .execution_options(populate_existing=True)
        )
        for token in list(result.scalars().all()):
            if inspect(token).expired:
                # A lost expiry race rolled the session back
                await self.db.refresh(token)
                if token.status != WaitTokenStatus.PENDING.value:
                    continue
            expires_at, warn_at = self.signature_deadlines(token)
            if now >= expires_at:
                if await self._expire(token, now):
                    report.signatures_expired.append(token.id)
            elif now >= warn_at and token.alerted_at is None:
                if await self._warn(token, expires_at, now):
                    report.signature_warnings.append(token.id)

    def signature_deadlines(self, token: ExternalWaitToken) -> tuple[datetime, datetime]:
        """(expires_at, warn_at) for a pending signature.

        The token's own deadline wins; tokens without one expire
        ``WORKFLOW_SIGNATURE_EXPIRY_DAYS`` after creation. The warning lead
        is the gap between the expiry and alert thresholds.
        """
        created = as_utc(token.created_at)
        expires_at = as_utc(token.deadline) or created + self.signature_expire_after
        lead = max(self.signature_expire_after - self.signature_alert_after, timedelta(0))
        return expires_at, max(expires_at - lead, created)

    async def _warn(self, token: ExternalWaitToken, expires_at: datetime, now: datetime) -> bool:
        claimed = await self.db.execute(
            update(ExternalWaitToken)
            .where(
                ExternalWaitToken.id == token.id,
                ExternalWaitToken.status == WaitTokenStatus.PENDING.value,
                ExternalWaitToken.alerted_at.is_(None),
            )
            .values(alerted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return False

        execution = await self.db.get(WorkflowExecution, token.execution_id)
        age = now - as_utc(token.created_at)
        days_left = (expires_at - now).total_seconds() / 86400
        message = (
            f"Signature {token.external_ref} pending for {age.days} day(s); "
            f"it expires in {days_left:.1f} day(s)"
        )
        await self._notify(ALERT_RECIPIENT_RULE, message, {
            "title": "Signature pending",
            "execution_id": token.execution_id,
            "subject_id": execution.subject_id if execution else None,
            "signers": list(token.signers or []),
            "expires_at": expires_at.isoformat(),
        })
        await self.journal.record_event(
            "signature_deadline_warning",
            message,
            execution_id=token.execution_id,
            subject_id=execution.subject_id if execution else None,
            details={"wait_token_id": token.id, "signers": list(token.signers or [])},
            severity=JournalSeverity.WARNING,
        )
        await self.db.commit()
        return True

    async def _expire(self, token: ExternalWaitToken, now: datetime) -> bool:
        # Same row order as cancel and resume: execution, token, step
        error = f"SignatureExpired: signature {token.external_ref} not completed within the deadline"
        token_id, execution_id, step_execution_id = token.id, token.execution_id, token.step_execution_id
        failed = await self.db.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == execution_id,
                WorkflowExecution.status == ExecutionStatus.WAITING.value,
            )
            .values(
                status=ExecutionStatus.FAILED.value,
                error_message=error,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        expired = await self.db.execute(
            update(ExternalWaitToken)
            .where(
                ExternalWaitToken.id == token_id,
                ExternalWaitToken.status == WaitTokenStatus.PENDING.value,
            )
            .values(
                status=WaitTokenStatus.EXPIRED.value,
                external_status="deadline_exceeded",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if expired.rowcount != 1:
            await self.db.rollback()
            return False

        await self.db.execute(
            update(WorkflowStepExecution)
            .where(
                WorkflowStepExecution.id == step_execution_id,
                WorkflowStepExecution.status == StepStatus.WAITING_EXTERNAL.value,
            )
            .values(status=StepStatus.FAILED.value, error_message=error, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        execution = await self.db.get(WorkflowExecution, execution_id, populate_existing=True)
        if failed.rowcount == 1 and execution is not None:
            await self.subjects.update(
                execution.subject_id,
                status=SubjectStatus.FAILED.value,
                execution_id=execution.id,
            )
        await self.journal.record_event(
            "signature_expired",
            error,
            execution_id=execution_id,
            subject_id=execution.subject_id if execution else None,
            details={"wait_token_id": token_id, "execution_failed": failed.rowcount == 1},
            severity=JournalSeverity.ERROR,
        )
        await self.db.commit()
        await self._notify(ALERT_RECIPIENT_RULE, error, {
            "title": "Signature expired",
            "execution_id": execution_id,
            "subject_id": execution.subject_id if execution else None,
            "priority": "high",
        })
        return True

    # ─── Notifications ─────────────────────────────────────

    async def _notify(self, recipient_rule: str, message: str, metadata: dict) -> bool:
        try:
            delivered = await self.sink.send(recipient_rule, message, metadata)
        except GatewayUnavailable as exc:
            logger.warning("Alert delivery failed", recipient_rule=recipient_rule, error=exc.message)
            return False
        if not delivered:
            logger.warning("Alert not delivered", recipient_rule=recipient_rule)
        return delivered
