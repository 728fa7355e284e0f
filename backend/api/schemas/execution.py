"""Execution, queue and resume schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, List, Optional, Union


class EnqueueRequest(BaseModel):
    """Request to queue a workflow run for a subject."""

    subject_id: str = Field(min_length=1, description="Business entity the run belongs to")
    definition_id: str = Field(min_length=1, description="Definition to run (latest active version)")
    version: Optional[int] = Field(default=None, ge=1, description="Pin an explicit version instead")
    input_data: dict[str, Any] = Field(default_factory=dict, description="Seeds the execution context")


class EnqueueResponse(BaseModel):
    """Queued run."""

    queue_item_id: str = Field(description="Queue item ID")
    definition_version: int = Field(description="Version the run is pinned to")


class ResumeRequest(BaseModel):
    """External decision for a waiting step."""

    step_execution_id: str = Field(min_length=1, description="Step returned when the wait began")
    decision: Union[str, dict[str, Any]] = Field(
        description='Outcome string ("approved") or an object with an "outcome" key'
    )


class ResumeResponse(BaseModel):
    """Execution status after the resume turn."""

    execution_id: str
    status: str


class CancelRequest(BaseModel):
    """Operator cancellation."""

    reason: str = Field(default="Cancelled by operator", max_length=500)


class RetryResponse(BaseModel):
    """Queued retry for a subject."""

    queue_item_id: str
    subject_id: str
    retry_count: int


class ExecutionResponse(BaseModel):
    """Execution summary."""

    id: str = Field(description="Execution ID")
    definition_id: str = Field(description="Pinned definition ID")
    definition_version: int = Field(description="Pinned definition version")
    subject_id: str = Field(description="Subject ID")
    status: str = Field(description="queued, running, waiting, completed, failed, cancelled")
    current_node_id: Optional[str] = Field(default=None, description="Current node")
    started_at: Optional[datetime] = Field(default=None, description="Execution start timestamp")
    completed_at: Optional[datetime] = Field(default=None, description="Execution completion timestamp")
    error_message: Optional[str] = Field(default=None, description="Error message if execution failed")

    class Config:
        from_attributes = True


class ExecutionListResponse(BaseModel):
    """Paginated list of executions."""

    items: List[ExecutionResponse] = Field(description="List of executions")
    total: int = Field(description="Total number of executions")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")
    total_pages: int
    has_next: bool
    has_prev: bool
