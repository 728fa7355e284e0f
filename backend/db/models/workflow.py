"""Published workflow definition model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class WorkflowDefinitionModel(BaseModel):
    """One immutable published version of a workflow graph.

    Attributes:
        id: Row identifier (UUID string)
        definition_id: Stable identifier shared by every version
        version: Monotonic version number per definition_id
        name: Human-readable workflow name
        nodes: Serialized nodes (id, type, config)
        edges: Serialized edges (id, source, target, guard, priority)
        active: Whether new executions may pin this version
        sla_hours: Optional SLA budget overriding the global default
        published_at: Publication timestamp
    """

    __tablename__ = "workflow_definitions"
    __table_args__ = (
        UniqueConstraint("definition_id", "version", name="uq_workflow_definition_version"),
    )

    definition_id: Mapped[str] = mapped_column(nullable=False, index=True)
    version: Mapped[int] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(nullable=False, default="")
    nodes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    edges: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    active: Mapped[bool] = mapped_column(default=True, index=True)
    sla_hours: Mapped[Optional[float]] = mapped_column(nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_graph_dict(self) -> dict:
        """Shape consumed by workflow.graph.WorkflowDefinition.from_dict."""
        return {
            "id": self.definition_id,
            "version": self.version,
            "name": self.name,
            "nodes": self.nodes or [],
            "edges": self.edges or [],
        }
