"""In-memory implementation of the workflow store."""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, Optional, Type

from pydantic import BaseModel

from ..errors import StoreError
from .base import R, RecordStore


class InMemoryWorkflowStore(RecordStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Transactions are serialized with a
    lock and rolled back by restoring a snapshot.
    """

    def __init__(self) -> None:
        self._tables: Dict[Type[BaseModel], Dict[int, BaseModel]] = {}
        self._sequences: Dict[Type[BaseModel], int] = {}
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"nodeflow_inmemory_tx_{id(self)}", default=False
        )

    # ------------------------------------------------------------------
    # Transactions
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
            return
        async with self._lock:
            snapshot = (copy.deepcopy(self._tables), dict(self._sequences))
            token = self._in_transaction.set(True)
            try:
                yield
            except BaseException:
                self._tables, self._sequences = snapshot
                raise
            finally:
                self._in_transaction.reset(token)

    # ------------------------------------------------------------------
    # Primitives
    def _table(self, model: Type[BaseModel]) -> Dict[int, BaseModel]:
        return self._tables.setdefault(model, {})

    async def _insert(self, record: R) -> R:
        model = type(record)
        next_id = self._sequences.get(model, 0) + 1
        self._sequences[model] = next_id
        record.id = next_id
        self._table(model)[next_id] = record.model_copy(deep=True)
        return record

    async def _update(self, record: R) -> R:
        table = self._table(type(record))
        if record.id not in table:
            raise StoreError(f"{type(record).__name__} #{record.id} does not exist")
        table[record.id] = record.model_copy(deep=True)
        return record

    async def _get(self, model: Type[R], record_id: int) -> Optional[R]:
        record = self._table(model).get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    async def _select(self, model: Type[R], **filters: Any) -> list[R]:
        matches = []
        for record_id in sorted(self._table(model)):
            record = self._table(model)[record_id]
            if all(_matches(getattr(record, k, None), v) for k, v in filters.items()):
                matches.append(record.model_copy(deep=True))
        return matches


def _matches(actual: Any, expected: Any) -> bool:
    if expected is None:
        return True
    if isinstance(expected, (list, tuple, set)):
        return actual in expected
    return actual == expected
