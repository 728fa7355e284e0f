"""Shared persistence helpers for the service layer."""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.base import BaseModel

ModelType = TypeVar("ModelType", bound=BaseModel)


class BaseService(Generic[ModelType]):
    """Lookups, inserts and filtered pagination over one model.

    Usage:
        class SqlSubjectStore(BaseService[WorkflowSubject]):
            def __init__(self, db: AsyncSession):
                super().__init__(WorkflowSubject, db)
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        return await self.db.get(self.model, id)

    async def list(
        self,
        offset: int = 0,
        limit: int = 50,
        order_by: str = "created_at",
        order_desc: bool = True,
        filters: Optional[dict[str, Any]] = None,
    ) -> tuple[Sequence[ModelType], int]:
        """Page through rows matching equality (or ``IN`` for lists) filters.

        Unknown filter or ordering columns are ignored.

        Returns:
            Tuple of (items, total_count)
        """
        conditions = []
        for name, value in (filters or {}).items():
            column = getattr(self.model, name, None)
            if column is None:
                continue
            conditions.append(column.in_(value) if isinstance(value, list) else column == value)

        query = select(self.model).where(*conditions)
        order_column = getattr(self.model, order_by, None)
        if order_column is not None:
            query = query.order_by(order_column.desc() if order_desc else order_column.asc())

        result = await self.db.execute(query.offset(offset).limit(limit))
        items = result.scalars().all()

        total = await self.db.scalar(select(func.count()).select_from(self.model).where(*conditions))
        return items, total or 0

    async def create(self, data: dict[str, Any]) -> ModelType:
        """Insert a row (a UUID id is assigned when absent) and flush it."""
        data.setdefault("id", str(uuid4()))
        instance = self.model(**data)
        self.db.add(instance)
        await self.db.flush()
        return instance
