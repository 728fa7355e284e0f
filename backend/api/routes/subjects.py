"""Subject endpoints."""

import logging

from fastapi import APIRouter, Depends, status as http_status
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas.execution import RetryResponse
from app.dependencies import get_db
from services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["subjects"])


@router.post("/{subject_id}/retry", response_model=RetryResponse, status_code=http_status.HTTP_202_ACCEPTED)
async def retry_subject(
    subject_id: str,
    db: AsyncSession = Depends(get_db),
) -> RetryResponse:
    """
    Start a fresh execution for a subject whose last run failed or was cancelled.

    Returns 429 (RetryLimitExceeded) once the subject's retry budget is spent.
    """
    svc = WorkflowService(db)
    item = await svc.retry_subject(subject_id)
    subject = await svc.subjects.get(subject_id)
    return RetryResponse(queue_item_id=item.id, subject_id=subject_id, retry_count=subject.retry_count)
