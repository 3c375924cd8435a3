"""SQL implementation of the workflow store (SQLite or PostgreSQL)."""

from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, Optional, Tuple, Type

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel, select

from ..db import (
    ApprovalRow,
    DefinitionRow,
    ExecutionLogRow,
    GateRow,
    InstanceRow,
    MigrationRow,
    VersionRow,
    WorkflowDB,
)
from ..errors import StoreError
from ..models import (
    Approval,
    ApprovalGate,
    InstanceMigration,
    WorkflowDefinition,
    WorkflowExecutionLog,
    WorkflowInstance,
    WorkflowVersion,
)
from .base import R, RecordStore

# record type -> (table row, columns mirrored out of the JSON payload)
_ROWS: Dict[Type[BaseModel], Tuple[Type[SQLModel], Tuple[str, ...]]] = {
    WorkflowDefinition: (DefinitionRow, ("slug",)),
    WorkflowVersion: (VersionRow, ("definition_id", "version_number", "status")),
    WorkflowInstance: (
        InstanceRow,
        ("definition_id", "version_id", "status", "entity_type", "entity_id"),
    ),
    WorkflowExecutionLog: (ExecutionLogRow, ("instance_id", "node_id", "status")),
    ApprovalGate: (GateRow, ("instance_id", "node_id", "status")),
    Approval: (ApprovalRow, ("gate_id", "instance_id", "approver_id", "status", "token")),
    InstanceMigration: (MigrationRow, ("instance_id",)),
}


class SQLWorkflowStore(RecordStore):
    """Persist workflow state through SQLModel tables."""

    def __init__(self, database_url: str):
        self.db = WorkflowDB(database_url)
        self._initialized = False
        self._current: ContextVar[Optional[AsyncSession]] = ContextVar(
            f"nodeflow_sql_session_{id(self)}", default=None
        )

    async def _ensure_schema(self) -> None:
        if not self._initialized:
            await self.db.init_db()
            self._initialized = True

    # ------------------------------------------------------------------
    # Sessions and transactions
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._current.get() is not None:
            yield
            return
        await self._ensure_schema()
        async with self.db.session() as session:
            token = self._current.set(session)
            try:
                yield
                await session.commit()
            except BaseException:
                await session.rollback()
                raise
            finally:
                self._current.reset(token)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        current = self._current.get()
        if current is not None:
            yield current
            await current.flush()
            return
        await self._ensure_schema()
        async with self.db.session() as session:
            yield session
            await session.commit()

    # ------------------------------------------------------------------
    # Primitives
    @staticmethod
    def _columns(record: BaseModel) -> tuple[Type[SQLModel], dict[str, Any]]:
        row_type, columns = _ROWS[type(record)]
        values = {}
        for column in columns:
            value = getattr(record, column)
            values[column] = str(value) if column == "entity_id" and value is not None else value
        return row_type, values

    async def _insert(self, record: R) -> R:
        row_type, values = self._columns(record)
        data = record.model_dump(mode="json", exclude={"id"})
        async with self._session() as session:
            row = row_type(data=data, **values)
            session.add(row)
            await session.flush()
            record.id = row.id
        return record

    async def _update(self, record: R) -> R:
        row_type, values = self._columns(record)
        data = record.model_dump(mode="json", exclude={"id"})
        async with self._session() as session:
            row = await session.get(row_type, record.id)
            if row is None:
                raise StoreError(f"{type(record).__name__} #{record.id} does not exist")
            for column, value in values.items():
                setattr(row, column, value)
            row.data = data
            session.add(row)
        return record

    async def _get(self, model: Type[R], record_id: int) -> Optional[R]:
        row_type, _ = _ROWS[model]
        async with self._session() as session:
            row = await session.get(row_type, record_id)
            if row is None:
                return None
            return model.model_validate({**row.data, "id": row.id})

    async def _select(self, model: Type[R], **filters: Any) -> list[R]:
        row_type, _ = _ROWS[model]
        statement = select(row_type)
        for name, value in filters.items():
            if value is None:
                continue
            column = getattr(row_type, name)
            if isinstance(value, (list, tuple, set)):
                statement = statement.where(column.in_(list(value)))
            else:
                if name == "entity_id":
                    value = str(value)
                statement = statement.where(column == value)
        statement = statement.order_by(row_type.id)
        async with self._session() as session:
            rows = (await session.execute(statement)).scalars().all()
            return [model.model_validate({**row.data, "id": row.id}) for row in rows]

    async def close(self) -> None:
        await self.db.dispose()
