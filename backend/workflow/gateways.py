"""
Collaborator interfaces consumed by the engine.

The engine never talks to approval services, e-signature providers,
form processors, notification transports or the business store directly;
it calls these interfaces. Gateways only *initiate* external work and hand
back a correlation reference, which the engine stores on the step and on
the wait token. They never write execution state.

Default implementations:
- ``InternalApprovalGateway``: approvals decided in-app through the resume API
  (the default approval backend)
- ``HttpGateway``: approval/e-signature service reached over HTTP (httpx);
  e-signatures whenever a gateway URL is set, approvals when
  ``WORKFLOW_APPROVAL_BACKEND=http``
- ``ContextFormProcessor``: copies submitted form data out of the context
- ``ManagerNotificationSink``: routes recipient rules to notification channels
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from core.exceptions import GatewayRejected, GatewayUnavailable
from notifications.channels import AlertPriority, WorkflowAlert
from notifications.manager import NotificationManager, get_notification_manager

logger = logging.getLogger(__name__)


# ─── Data Types ────────────────────────────────────────────────

@dataclass
class WaitRequest:
    """What a gateway receives when a wait node is entered."""
    execution_id: str
    step_execution_id: str
    subject_id: str
    node_id: str
    config: Any
    context: dict = field(default_factory=dict)


@dataclass
class GatewayReceipt:
    """What a gateway hands back: the correlation for a later resume."""
    correlation_ref: str
    signers: list[str] = field(default_factory=list)
    external_status: str = "pending"
    details: dict = field(default_factory=dict)

    def to_output(self) -> dict:
        return {
            "correlation_ref": self.correlation_ref,
            "signers": list(self.signers),
            "external_status": self.external_status,
            **({"details": self.details} if self.details else {}),
        }


# ─── Interfaces ────────────────────────────────────────────────

class ApprovalGateway(ABC):
    @abstractmethod
    async def initiate_approval(self, request: WaitRequest) -> GatewayReceipt:
        """Start a human approval. Raises GatewayUnavailable on failure."""
        ...


class SignatureGateway(ABC):
    @abstractmethod
    async def initiate_signature(self, request: WaitRequest) -> GatewayReceipt:
        """Send a document for e-signature. Raises GatewayUnavailable on failure."""
        ...


class FormProcessor(ABC):
    @abstractmethod
    async def process(self, node_id: str, config: Any, context: dict) -> dict:
        """Process a form step and return the data to store in the context."""
        ...


class NotificationSink(ABC):
    @abstractmethod
    async def send(self, recipient_rule: str, message: str, metadata: Optional[dict] = None) -> bool:
        """Best-effort delivery. Returns False (or raises) when nothing was delivered."""
        ...


class SubjectStore(ABC):
    """Read/write access to the workflow-facing columns of a business subject."""

    @abstractmethod
    async def get(self, subject_id: str):
        ...

    @abstractmethod
    async def update(
        self,
        subject_id: str,
        status: Optional[str] = None,
        execution_id: Optional[str] = None,
        context_snapshot: Optional[dict] = None,
    ):
        ...

    @abstractmethod
    async def increment_retry(self, subject_id: str) -> int:
        ...


# ─── Default implementations ───────────────────────────────────

class InternalApprovalGateway(ApprovalGateway):
    """Approvals handled by in-app reviewers.

    Nothing leaves the process: the receipt lists the assignees from the
    node config and reviewers answer through the resume API.
    """

    async def initiate_approval(self, request: WaitRequest) -> GatewayReceipt:
        config = request.config
        assignees = list(getattr(config, "assignees", ()) or ())
        groups = list(getattr(config, "groups", ()) or ())
        return GatewayReceipt(
            correlation_ref=f"approval:{request.step_execution_id}",
            signers=assignees,
            details={
                "assignment_type": getattr(config, "assignment_type", "all"),
                "groups": groups,
            },
        )


class HttpGateway(ApprovalGateway, SignatureGateway):
    """Approval and e-signature initiation against an HTTP service.

    POST {base_url}/approvals and POST {base_url}/signatures; the response
    must carry ``id`` (the correlation reference) and may carry ``signers``
    and ``status``. Network errors, timeouts, 429 and 5xx answers raise
    GatewayUnavailable so the dispatcher retries the item; any other 4xx
    raises GatewayRejected and fails the execution.
    """

    def __init__(self, base_url: str, token: str = "", timeout: float = 10.0, transport=None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    async def initiate_approval(self, request: WaitRequest) -> GatewayReceipt:
        return await self._post("approvals", request)

    async def initiate_signature(self, request: WaitRequest) -> GatewayReceipt:
        return await self._post("signatures", request)

    async def _post(self, resource: str, request: WaitRequest) -> GatewayReceipt:
        config = request.config
        payload = {
            "execution_id": request.execution_id,
            "step_execution_id": request.step_execution_id,
            "subject_id": request.subject_id,
            "node_id": request.node_id,
            "signers": list(getattr(config, "signers", ()) or ()),
            "assignees": list(getattr(config, "assignees", ()) or ()),
            "document_key": getattr(config, "document_key", ""),
            "message": getattr(config, "message", ""),
        }
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        url = f"{self.base_url}/{resource}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(f"Gateway call failed: POST {url}: {exc}")
            raise GatewayUnavailable(f"{resource} gateway unreachable: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise GatewayUnavailable(f"{resource} gateway answered HTTP {response.status_code}")
        if response.status_code >= 400:
            raise GatewayRejected(
                f"{resource} gateway rejected the request (HTTP {response.status_code}): {response.text[:200]}"
            )

        body = response.json()
        ref = body.get("id") or body.get("correlation_ref")
        if not ref:
            raise GatewayUnavailable(f"{resource} gateway returned no correlation id")
        return GatewayReceipt(
            correlation_ref=str(ref),
            signers=[str(s) for s in body.get("signers", [])],
            external_status=str(body.get("status", "pending")),
        )


class ContextFormProcessor(FormProcessor):
    """Forms are submitted before the run is enqueued; take the data from the context.

    The form payload is read from ``context["forms"][form_key]`` or, when the
    caller submitted it flat, from the top-level context. Declared
    ``required_fields`` that are missing are reported in the result.
    """

    async def process(self, node_id: str, config: Any, context: dict) -> dict:
        form_key = getattr(config, "form_key", "") or node_id
        forms = context.get("forms") if isinstance(context.get("forms"), dict) else {}
        data = forms.get(form_key)
        if not isinstance(data, dict):
            data = {k: v for k, v in context.items() if k not in ("forms", "decision", "decisions")}
        required = getattr(config, "required_fields", ()) or ()
        missing = [name for name in required if data.get(name) in (None, "")]
        return {"form_key": form_key, "data": data, "missing_fields": missing, "complete": not missing}


class ManagerNotificationSink(NotificationSink):
    """Deliver through the NotificationManager.

    ``metadata`` may carry ``title``, ``priority``, ``execution_id``,
    ``subject_id`` and ``node_id``; the rest travels with the alert.
    Delivered means at least one target accepted it.
    """

    _ALERT_FIELDS = ("title", "priority", "execution_id", "subject_id", "node_id")

    def __init__(self, manager: Optional[NotificationManager] = None, manager_emails: Optional[list[str]] = None):
        self.manager = manager or get_notification_manager()
        self.manager_emails = list(manager_emails or [])

    async def send(self, recipient_rule: str, message: str, metadata: Optional[dict] = None) -> bool:
        metadata = metadata or {}
        alert = WorkflowAlert(
            title=metadata.get("title") or "Credentialing workflow",
            message=message,
            priority=AlertPriority(metadata.get("priority", AlertPriority.NORMAL.value)),
            execution_id=metadata.get("execution_id"),
            subject_id=metadata.get("subject_id"),
            node_id=metadata.get("node_id"),
            metadata={k: v for k, v in metadata.items() if k not in self._ALERT_FIELDS},
        )
        deliveries = await self.manager.notify(recipient_rule, alert, manager_emails=self.manager_emails)
        return any(d.ok for d in deliveries)


class UnconfiguredSignatureGateway(SignatureGateway):
    """Used when no e-signature service is configured; every call is retryable."""

    async def initiate_signature(self, request: WaitRequest) -> GatewayReceipt:
        raise GatewayUnavailable("No e-signature service configured (set WORKFLOW_GATEWAY_URL)")


def build_gateways(settings) -> tuple[ApprovalGateway, SignatureGateway]:
    """Approval and signature gateways for the configured environment.

    E-signatures go to ``WORKFLOW_GATEWAY_URL`` when it is set. Approvals stay
    in-app unless ``WORKFLOW_APPROVAL_BACKEND`` is ``http``.

    Raises:
        ValueError: unknown approval backend, or ``http`` without a gateway URL
    """
    backend = settings.WORKFLOW_APPROVAL_BACKEND.strip().lower()
    if backend not in ("internal", "http"):
        raise ValueError(f"Unknown WORKFLOW_APPROVAL_BACKEND: {settings.WORKFLOW_APPROVAL_BACKEND}")
    if not settings.WORKFLOW_GATEWAY_URL:
        if backend == "http":
            raise ValueError("WORKFLOW_APPROVAL_BACKEND=http requires WORKFLOW_GATEWAY_URL")
        return InternalApprovalGateway(), UnconfiguredSignatureGateway()

    http = HttpGateway(
        settings.WORKFLOW_GATEWAY_URL,
        token=settings.WORKFLOW_GATEWAY_TOKEN,
        timeout=settings.WORKFLOW_GATEWAY_TIMEOUT,
    )
    approval = http if backend == "http" else InternalApprovalGateway()
    return approval, http
