"""Alert delivery channels.

A channel knows one transport. It receives a ``WorkflowAlert`` plus one
already-resolved recipient and reports what happened as a ``Delivery``;
transport errors are captured in the result instead of raised.
"""

import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage
from enum import Enum
from typing import Any, Optional

import httpx

from core.utils import utc_now

logger = logging.getLogger(__name__)


class AlertPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class ChannelKind(str, Enum):
    EMAIL = "email"
    WEBHOOK = "webhook"


@dataclass
class WorkflowAlert:
    """Something an operator should hear about: a notification node, an SLA tier, a signature deadline."""
    title: str
    message: str
    priority: AlertPriority = AlertPriority.NORMAL
    execution_id: Optional[str] = None
    subject_id: Optional[str] = None
    node_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    raised_at: str = field(default_factory=lambda: utc_now().isoformat())

    def to_payload(self, recipient: str = "") -> dict:
        return {
            "event": "workflow.alert",
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "recipient": recipient,
            "execution_id": self.execution_id,
            "subject_id": self.subject_id,
            "node_id": self.node_id,
            "metadata": self.metadata,
            "raised_at": self.raised_at,
        }


@dataclass
class Delivery:
    kind: ChannelKind
    recipient: str
    ok: bool
    error: Optional[str] = None


class AlertChannel(ABC):
    kind: ChannelKind

    @abstractmethod
    async def deliver(self, alert: WorkflowAlert, recipient: str) -> Delivery:
        ...


# ─── Email ─────────────────────────────────────────────────────

class EmailChannel(AlertChannel):
    """SMTP delivery.

    Config keys: smtp_host, smtp_port, smtp_user, smtp_password,
    from_address, use_tls.
    """

    kind = ChannelKind.EMAIL

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

    async def deliver(self, alert: WorkflowAlert, recipient: str) -> Delivery:
        if not recipient:
            return Delivery(self.kind, "", ok=False, error="No email recipient")

        msg = EmailMessage()
        msg["Subject"] = f"[{alert.priority.value.upper()}] {alert.title}"
        msg["From"] = self.config.get("from_address", "workflow@localhost")
        msg["To"] = recipient
        msg.set_content(self._body(alert))

        try:
            # smtplib blocks
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._send_smtp, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Email to {recipient} failed: {e}")
            return Delivery(self.kind, recipient, ok=False, error=str(e))
        return Delivery(self.kind, recipient, ok=True)

    @staticmethod
    def _body(alert: WorkflowAlert) -> str:
        lines = [alert.message, ""]
        if alert.subject_id:
            lines.append(f"Subject: {alert.subject_id}")
        if alert.execution_id:
            lines.append(f"Execution: {alert.execution_id}")
        if alert.node_id:
            lines.append(f"Node: {alert.node_id}")
        lines.append(f"Raised at: {alert.raised_at}")
        return "\n".join(lines)

    def _send_smtp(self, msg: EmailMessage) -> None:
        host = self.config.get("smtp_host", "localhost")
        port = self.config.get("smtp_port", 587)
        with smtplib.SMTP(host, port, timeout=15) as server:
            if self.config.get("use_tls", True):
                server.starttls()
            user = self.config.get("smtp_user")
            if user and self.config.get("smtp_password"):
                server.login(user, self.config["smtp_password"])
            server.send_message(msg)


# ─── Webhook ───────────────────────────────────────────────────

class WebhookChannel(AlertChannel):
    """JSON POST of the alert payload.

    A recipient that is a URL is posted to directly; any other recipient
    (a named rule such as ``alerts``) goes to the configured ``url`` with
    the name carried in the payload.
    """

    kind = ChannelKind.WEBHOOK

    def __init__(self, config: Optional[dict] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or {}
        self._transport = transport

    async def deliver(self, alert: WorkflowAlert, recipient: str) -> Delivery:
        url = recipient if recipient.startswith(("http://", "https://")) else self.config.get("url")
        if not url:
            return Delivery(self.kind, recipient, ok=False, error="No webhook URL")

        headers = {"X-Workflow-Event": "workflow.alert", **self.config.get("headers", {})}
        try:
            async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
                response = await client.post(url, json=alert.to_payload(recipient), headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Webhook to {url} failed: {e}")
            return Delivery(self.kind, url, ok=False, error=str(e))
        return Delivery(self.kind, url, ok=True)
