"""Shared pytest fixtures for the credentialing workflow engine test suite.

Provides:
- A fresh async SQLite database per test (no PostgreSQL needed)
- AsyncSession for direct service / engine tests
- FastAPI test client (httpx.AsyncClient) wired to the same database
- Fake approval / signature gateways and a recording notification sink
- Definition helpers, including the start → form → condition → approval → end scenario
"""

import os
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("WORKFLOW_RETRY_POLICY", "fixed")
os.environ.setdefault("WORKFLOW_RETRY_BASE_DELAY", "0")
os.environ.setdefault("MANAGER_EMAILS", "manager@example.com")

from db.base import Base  # noqa: E402
from core.exceptions import GatewayUnavailable  # noqa: E402
from workflow.gateways import (  # noqa: E402
    ApprovalGateway,
    GatewayReceipt,
    NotificationSink,
    SignatureGateway,
    WaitRequest,
)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Async engine on a throwaway SQLite file with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'workflow-test.db'}", echo=False)
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(db_engine, session_factory, monkeypatch):
    """FastAPI app whose sessions and health check use the test database."""
    import db.database as db_mod
    from app.dependencies import get_db
    from app.main import create_app

    monkeypatch.setattr(db_mod, "engine", db_engine)
    monkeypatch.setattr(db_mod, "AsyncSessionLocal", session_factory)

    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    test_app = create_app()
    test_app.dependency_overrides[get_db] = _get_test_db
    yield test_app
    test_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeApprovalGateway(ApprovalGateway):
    """Records approval initiations; ``fail_times`` simulates an outage."""

    def __init__(self, fail_times: int = 0):
        self.requests: list[WaitRequest] = []
        self.fail_times = fail_times

    async def initiate_approval(self, request: WaitRequest) -> GatewayReceipt:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise GatewayUnavailable("approval service down")
        self.requests.append(request)
        return GatewayReceipt(
            correlation_ref=f"apr-{request.step_execution_id}",
            signers=list(request.config.assignees),
        )


class FakeSignatureGateway(SignatureGateway):
    def __init__(self, fail_times: int = 0):
        self.requests: list[WaitRequest] = []
        self.fail_times = fail_times

    async def initiate_signature(self, request: WaitRequest) -> GatewayReceipt:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise GatewayUnavailable("e-signature service down")
        self.requests.append(request)
        return GatewayReceipt(
            correlation_ref=f"env-{request.step_execution_id}",
            signers=list(request.config.signers),
            external_status="sent",
        )


class RecordingSink(NotificationSink):
    """Keeps every notification; ``deliver=False`` simulates a dead transport."""

    def __init__(self, deliver: bool = True):
        self.sent: list[dict] = []
        self.deliver = deliver

    async def send(self, recipient_rule: str, message: str, metadata: Optional[dict] = None) -> bool:
        self.sent.append({"recipient_rule": recipient_rule, "message": message, "metadata": metadata or {}})
        return self.deliver

    def to(self, recipient_rule: str) -> list[dict]:
        return [n for n in self.sent if n["recipient_rule"] == recipient_rule]


@pytest.fixture
def approval_gateway() -> FakeApprovalGateway:
    return FakeApprovalGateway()


@pytest.fixture
def signature_gateway() -> FakeSignatureGateway:
    return FakeSignatureGateway()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def engine(db_session, approval_gateway, signature_gateway, sink):
    """WorkflowEngine over the test session with fake collaborators."""
    from workflow.engine import WorkflowEngine

    return WorkflowEngine(
        db_session,
        approval_gateway=approval_gateway,
        signature_gateway=signature_gateway,
        notification_sink=sink,
    )


@pytest.fixture
def dispatcher(db_session):
    from workflow.dispatcher import QueueDispatcher
    from workflow.retry_strategies import RetryStrategy

    return QueueDispatcher(db_session, max_attempts=3, retry_strategy=RetryStrategy.fixed(delay=0.0))


@pytest.fixture
def run_queue(db_session, engine, dispatcher):
    """Drain the queue the way the Celery task does, on the test session."""
    from worker.tasks.workflow import process_queue_items

    async def _run(max_items: int = 10) -> dict:
        return await process_queue_items(db_session, max_items=max_items, engine=engine, dispatcher=dispatcher)

    return _run


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

def credentialing_definition(definition_id: str = "credentialing") -> dict:
    """start → form → condition(amount > 100 ? heavy : light) → approval → end."""
    return {
        "definition_id": definition_id,
        "name": "Credentialing review",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "form", "type": "form", "config": {"form_key": "intake", "required_fields": ["cpf"]}},
            {"id": "condition", "type": "condition"},
            {"id": "approval", "type": "approval", "config": {"assignees": ["analyst-1"]}},
            {"id": "end", "type": "end", "config": {"outcome": "approved"}},
            {"id": "rejected", "type": "end", "config": {"outcome": "rejected"}},
            {"id": "light_end", "type": "end", "config": {"outcome": "fast_track"}},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "form"},
            {"id": "e2", "source": "form", "target": "condition"},
            {"id": "heavy", "source": "condition", "target": "approval", "guard": "amount > 100", "priority": 1},
            {"id": "light", "source": "condition", "target": "light_end"},
            {"id": "approved", "source": "approval", "target": "end", "guard": "decision == 'approved'"},
            {"id": "not_approved", "source": "approval", "target": "rejected"},
        ],
    }


def signature_definition(definition_id: str = "contract") -> dict:
    """start → signature → end."""
    return {
        "definition_id": definition_id,
        "name": "Contract signature",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "sign", "type": "signature", "config": {"signers": ["provider@example.com"], "document_key": "contract"}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"source": "start", "target": "sign"},
            {"source": "sign", "target": "end"},
        ],
    }


@pytest.fixture
def publish(db_session):
    """Publish a definition dict through DefinitionService."""
    from services.workflow_service import DefinitionService

    async def _publish(data: dict, sla_hours: Optional[float] = None):
        return await DefinitionService(db_session).publish(
            definition_id=data["definition_id"],
            nodes=data["nodes"],
            edges=data["edges"],
            name=data.get("name", ""),
            sla_hours=sla_hours,
        )

    return _publish


@pytest.fixture
def enqueue(db_session):
    """Enqueue a run of the latest active version for a subject."""
    from services.workflow_service import WorkflowService

    async def _enqueue(subject_id: str, definition_id: str, input_data: Optional[dict] = None):
        return await WorkflowService(db_session).enqueue(subject_id, definition_id, input_data or {})

    return _enqueue


@pytest.fixture
def latest_execution(db_session):
    from services.workflow_service import WorkflowService

    async def _latest(subject_id: str):
        return await WorkflowService(db_session).latest_execution(subject_id)

    return _latest


@pytest.fixture
def steps_of(db_session):
    """Ordered step rows of an execution, freshly loaded."""
    from sqlalchemy import select
    from db.models.workflow_step import WorkflowStepExecution

    async def _steps(execution_id: str):
        result = await db_session.execute(
            select(WorkflowStepExecution)
            .where(WorkflowStepExecution.execution_id == execution_id)
            .order_by(WorkflowStepExecution.sequence.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    return _steps
