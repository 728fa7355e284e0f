"""Workflow definition schemas."""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class NodeSchema(BaseModel):
    """A node as submitted for publishing."""

    id: str = Field(min_length=1, description="Node ID, unique within the definition")
    type: str = Field(description="start, form, approval, signature, notification, condition, end")
    config: dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")


class EdgeSchema(BaseModel):
    """A directed edge as submitted for publishing."""

    id: Optional[str] = Field(default=None, description="Edge ID (defaults to its position)")
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    guard: Optional[str] = Field(default=None, description="Boolean guard over the context; empty = default edge")
    priority: Optional[int] = Field(default=None, description="Lower is evaluated first")


class DefinitionPublish(BaseModel):
    """Request to publish a new definition version."""

    definition_id: str = Field(min_length=1, max_length=255, description="Stable definition identifier")
    name: str = Field(default="", max_length=255, description="Display name")
    nodes: List[NodeSchema] = Field(description="Graph nodes")
    edges: List[EdgeSchema] = Field(default_factory=list, description="Graph edges")
    sla_hours: Optional[float] = Field(default=None, gt=0, description="SLA budget for executions of this version")


class DefinitionResponse(BaseModel):
    """A stored definition version."""

    id: str = Field(description="Row ID")
    definition_id: str = Field(description="Definition identifier")
    version: int = Field(description="Version number")
    name: str = Field(description="Display name")
    nodes: List[dict[str, Any]] = Field(description="Graph nodes")
    edges: List[dict[str, Any]] = Field(description="Graph edges")
    active: bool = Field(description="Whether new enqueues may use this version")
    sla_hours: Optional[float] = Field(default=None, description="SLA budget in hours")
    published_at: Optional[datetime] = Field(default=None, description="Publish timestamp")

    class Config:
        from_attributes = True


class DefinitionListResponse(BaseModel):
    """Paginated list of definition versions, newest first."""

    items: List[DefinitionResponse]
    total: int
    page: int
    per_page: int
    total_pages: int
    has_next: bool
    has_prev: bool
