"""Workflow execution endpoints: enqueue, resume, cancel and state."""

from fastapi import APIRouter, Depends, Query, status as http_status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Optional
import logging

from api.schemas.common import ErrorResponse, PaginationParams
from api.schemas.execution import (
    CancelRequest,
    EnqueueRequest,
    EnqueueResponse,
    ExecutionListResponse,
    ExecutionResponse,
    ResumeRequest,
    ResumeResponse,
)
from app.dependencies import get_db
from core.utils import calculate_offset, paginate
from services.workflow_service import WorkflowService
from workflow.engine import WorkflowEngine
from workflow.introspection import get_state
from workflow.resume import ResumeService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["executions"])


@router.post(
    "/enqueue",
    response_model=EnqueueResponse,
    status_code=http_status.HTTP_202_ACCEPTED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def enqueue_execution(
    payload: EnqueueRequest,
    db: AsyncSession = Depends(get_db),
) -> EnqueueResponse:
    """
    Queue a workflow run for a subject.

    Returns 409 when the subject already has a pending or processing item.
    """
    item = await WorkflowService(db).enqueue(
        subject_id=payload.subject_id,
        definition_id=payload.definition_id,
        input_data=payload.input_data,
        version=payload.version,
    )
    return EnqueueResponse(queue_item_id=item.id, definition_version=item.definition_version)


@router.post("/resume", response_model=ResumeResponse, responses={409: {"model": ErrorResponse}})
async def resume_execution(
    payload: ResumeRequest,
    db: AsyncSession = Depends(get_db),
) -> ResumeResponse:
    """
    Deliver an external decision to a waiting step.

    Returns 409 (NotAwaitingDecision) when the step was already resumed,
    expired, or its execution is no longer waiting.
    """
    result = await ResumeService(db).resume(payload.step_execution_id, payload.decision)
    return ResumeResponse(**result)


@router.get("/", response_model=ExecutionListResponse)
async def list_executions(
    pagination: PaginationParams = Depends(),
    subject_id: Optional[str] = Query(None, description="Filter by subject ID"),
    exec_status: Optional[str] = Query(None, alias="status", description="Filter by execution status"),
    db: AsyncSession = Depends(get_db),
) -> ExecutionListResponse:
    """List workflow executions (paginated, filterable)."""
    executions, total = await WorkflowService(db).list_executions(
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
        status=exec_status,
        subject_id=subject_id,
    )
    return ExecutionListResponse(**paginate(
        [ExecutionResponse.model_validate(ex) for ex in executions],
        total,
        pagination.page,
        pagination.per_page,
    ))


@router.get("/{execution_id}/state", response_model=dict[str, Any])
async def get_execution_state(
    execution_id: str,
    include_context: bool = Query(False, description="Include the execution context"),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Execution with ordered steps, wait blockers and progress statistics."""
    return await get_state(db, execution_id, include_context=include_context)


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: str,
    payload: Optional[CancelRequest] = None,
    db: AsyncSession = Depends(get_db),
) -> ExecutionResponse:
    """Cancel a queued, running or waiting execution."""
    reason = payload.reason if payload else CancelRequest().reason
    execution = await WorkflowEngine(db).cancel(execution_id, reason)
    logger.info(f"Execution {execution_id} cancelled: {reason}")
    return ExecutionResponse.model_validate(execution)
