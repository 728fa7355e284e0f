"""Workflow definition endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status as http_status
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas.common import ErrorResponse, PaginationParams
from api.schemas.workflow import DefinitionListResponse, DefinitionPublish, DefinitionResponse
from app.dependencies import get_db
from core.utils import calculate_offset, paginate
from services.workflow_service import DefinitionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])


@router.post(
    "/definitions",
    response_model=DefinitionResponse,
    status_code=http_status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
async def publish_definition(
    payload: DefinitionPublish,
    db: AsyncSession = Depends(get_db),
) -> DefinitionResponse:
    """
    Validate and publish a new version of a workflow definition.

    A definition that fails validation is rejected with 422 and the list
    of violations; nothing is stored.
    """
    svc = DefinitionService(db)
    row = await svc.publish(
        definition_id=payload.definition_id,
        name=payload.name,
        nodes=[n.model_dump() for n in payload.nodes],
        edges=[e.model_dump(exclude_none=True) for e in payload.edges],
        sla_hours=payload.sla_hours,
    )
    return DefinitionResponse.model_validate(row)


@router.get("/definitions", response_model=DefinitionListResponse)
async def list_definitions(
    pagination: PaginationParams = Depends(),
    definition_id: Optional[str] = Query(None, description="Only versions of this definition"),
    active: Optional[bool] = Query(None, description="Filter by active flag"),
    db: AsyncSession = Depends(get_db),
) -> DefinitionListResponse:
    """List published definition versions."""
    filters = {}
    if definition_id:
        filters["definition_id"] = definition_id
    if active is not None:
        filters["active"] = active
    rows, total = await DefinitionService(db).list(
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
        order_by="published_at",
        filters=filters,
    )
    return DefinitionListResponse(**paginate(
        [DefinitionResponse.model_validate(r) for r in rows],
        total,
        pagination.page,
        pagination.per_page,
    ))


@router.get("/definitions/{definition_id}", response_model=DefinitionResponse)
async def get_definition(
    definition_id: str,
    version: Optional[int] = Query(None, ge=1, description="Explicit version (default: latest)"),
    db: AsyncSession = Depends(get_db),
) -> DefinitionResponse:
    """Get the latest, or an explicit, version of a definition."""
    svc = DefinitionService(db)
    if version is None:
        row = await svc.get_latest(definition_id)
    else:
        row = await svc.get_version(definition_id, version)
    return DefinitionResponse.model_validate(row)


@router.post("/definitions/{definition_id}/versions/{version}/deactivate", response_model=DefinitionResponse)
async def deactivate_definition(
    definition_id: str,
    version: int,
    db: AsyncSession = Depends(get_db),
) -> DefinitionResponse:
    """Stop new runs from using a version. Executions pinned to it continue."""
    row = await DefinitionService(db).deactivate(definition_id, version)
    return DefinitionResponse.model_validate(row)
