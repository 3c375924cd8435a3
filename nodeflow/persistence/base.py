"""Shared record-oriented implementation of ``WorkflowStore``.

Backends only provide the primitives ``_insert``, ``_update``, ``_get``
and ``_select``; the typed API is written once here.
"""

from __future__ import annotations

import abc
from typing import Any, AsyncContextManager, Iterable, Optional, Type, TypeVar

from pydantic import BaseModel

from ..models import (
    Approval,
    ApprovalGate,
    InstanceMigration,
    WorkflowDefinition,
    WorkflowExecutionLog,
    WorkflowInstance,
    WorkflowVersion,
)
from .store import WorkflowStore

R = TypeVar("R", bound=BaseModel)


class RecordStore(WorkflowStore, abc.ABC):
    """Base class for stores keeping records addressed by integer ids."""

    @abc.abstractmethod
    def transaction(self) -> AsyncContextManager[None]:
        raise NotImplementedError

    @abc.abstractmethod
    async def _insert(self, record: R) -> R:
        """Persist a new record and assign its id."""
        raise NotImplementedError

    @abc.abstractmethod
    async def _update(self, record: R) -> R:
        raise NotImplementedError

    @abc.abstractmethod
    async def _get(self, model: Type[R], record_id: int) -> Optional[R]:
        raise NotImplementedError

    @abc.abstractmethod
    async def _select(self, model: Type[R], **filters: Any) -> list[R]:
        """Records of ``model`` matching every filter, in id order.

        A filter value that is a list/tuple matches any of its members;
        ``None`` filters are ignored.
        """
        raise NotImplementedError

    async def _save(self, record: R) -> R:
        if getattr(record, "id", None) is None:
            return await self._insert(record)
        return await self._update(record)

    async def _first(self, model: Type[R], **filters: Any) -> Optional[R]:
        records = await self._select(model, **filters)
        return records[0] if records else None

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return await self._save(definition)

    async def get_definition(self, definition_id: int) -> Optional[WorkflowDefinition]:
        return await self._get(WorkflowDefinition, definition_id)

    async def get_definition_by_slug(self, slug: str) -> Optional[WorkflowDefinition]:
        return await self._first(WorkflowDefinition, slug=slug)

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return await self._select(WorkflowDefinition)

    async def save_version(self, version: WorkflowVersion) -> WorkflowVersion:
        return await self._save(version)

    async def get_version(self, version_id: int) -> Optional[WorkflowVersion]:
        return await self._get(WorkflowVersion, version_id)

    async def list_versions(
        self, definition_id: int, status: Optional[str] = None
    ) -> list[WorkflowVersion]:
        return await self._select(WorkflowVersion, definition_id=definition_id, status=status)

    async def save_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        return await self._save(instance)

    async def get_instance(self, instance_id: int) -> Optional[WorkflowInstance]:
        return await self._get(WorkflowInstance, instance_id)

    async def list_instances(
        self,
        definition_id: Optional[int] = None,
        statuses: Optional[Iterable[str]] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> list[WorkflowInstance]:
        return await self._select(
            WorkflowInstance,
            definition_id=definition_id,
            status=list(statuses) if statuses is not None else None,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
        )

    async def save_log(self, log: WorkflowExecutionLog) -> WorkflowExecutionLog:
        return await self._save(log)

    async def list_logs(
        self, instance_id: int, node_id: Optional[str] = None, status: Optional[str] = None
    ) -> list[WorkflowExecutionLog]:
        return await self._select(
            WorkflowExecutionLog, instance_id=instance_id, node_id=node_id, status=status
        )

    async def save_gate(self, gate: ApprovalGate) -> ApprovalGate:
        return await self._save(gate)

    async def get_gate(self, gate_id: int) -> Optional[ApprovalGate]:
        return await self._get(ApprovalGate, gate_id)

    async def list_gates(
        self, instance_id: Optional[int] = None, status: Optional[str] = None
    ) -> list[ApprovalGate]:
        return await self._select(ApprovalGate, instance_id=instance_id, status=status)

    async def save_approval(self, approval: Approval) -> Approval:
        return await self._save(approval)

    async def get_approval(self, approval_id: int) -> Optional[Approval]:
        return await self._get(Approval, approval_id)

    async def get_approval_by_token(self, token: str) -> Optional[Approval]:
        if not token:
            return None
        return await self._first(Approval, token=token)

    async def list_approvals(
        self,
        gate_id: Optional[int] = None,
        instance_id: Optional[int] = None,
        approver_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Approval]:
        return await self._select(
            Approval,
            gate_id=gate_id,
            instance_id=instance_id,
            approver_id=approver_id,
            status=status,
        )

    async def save_migration(self, migration: InstanceMigration) -> InstanceMigration:
        return await self._save(migration)

    async def list_migrations(self, instance_id: Optional[int] = None) -> list[InstanceMigration]:
        return await self._select(InstanceMigration, instance_id=instance_id)
