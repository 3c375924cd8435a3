"""Store abstraction for durable workflow state."""

from __future__ import annotations

from typing import AsyncContextManager, Iterable, Optional, Protocol

from ..models import (
    Approval,
    ApprovalGate,
    InstanceMigration,
    WorkflowDefinition,
    WorkflowExecutionLog,
    WorkflowInstance,
    WorkflowVersion,
)


class WorkflowStore(Protocol):
    """Protocol for workflow persistence backends.

    ``save_*`` inserts records without an id (assigning one from a
    monotonic sequence) and updates the rest. Records handed out are
    copies; changes only persist when saved again.
    """

    def transaction(self) -> AsyncContextManager[None]:
        """Group calls into one atomic unit; nested use joins the outer one."""

    # definitions -------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert or update a definition."""

    async def get_definition(self, definition_id: int) -> Optional[WorkflowDefinition]:
        """Fetch a definition by id."""

    async def get_definition_by_slug(self, slug: str) -> Optional[WorkflowDefinition]:
        """Fetch a definition by slug."""

    async def list_definitions(self) -> list[WorkflowDefinition]:
        """Return all definitions."""

    # versions ----------------------------------------------------------
    async def save_version(self, version: WorkflowVersion) -> WorkflowVersion:
        """Insert or update a version."""

    async def get_version(self, version_id: int) -> Optional[WorkflowVersion]:
        """Fetch a version by id."""

    async def list_versions(
        self, definition_id: int, status: Optional[str] = None
    ) -> list[WorkflowVersion]:
        """Versions of a definition in id order."""

    # instances ---------------------------------------------------------
    async def save_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Insert or update an instance."""

    async def get_instance(self, instance_id: int) -> Optional[WorkflowInstance]:
        """Fetch an instance by id."""

    async def list_instances(
        self,
        definition_id: Optional[int] = None,
        statuses: Optional[Iterable[str]] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> list[WorkflowInstance]:
        """Instances matching all given filters in id order."""

    # execution logs ----------------------------------------------------
    async def save_log(self, log: WorkflowExecutionLog) -> WorkflowExecutionLog:
        """Append or update an execution log row."""

    async def list_logs(
        self, instance_id: int, node_id: Optional[str] = None, status: Optional[str] = None
    ) -> list[WorkflowExecutionLog]:
        """Execution log rows of an instance in sequence order."""

    # approval gates ----------------------------------------------------
    async def save_gate(self, gate: ApprovalGate) -> ApprovalGate:
        """Insert or update an approval gate."""

    async def get_gate(self, gate_id: int) -> Optional[ApprovalGate]:
        """Fetch a gate by id."""

    async def list_gates(
        self, instance_id: Optional[int] = None, status: Optional[str] = None
    ) -> list[ApprovalGate]:
        """Gates matching the filters in id order."""

    # approvals ---------------------------------------------------------
    async def save_approval(self, approval: Approval) -> Approval:
        """Insert or update an approval."""

    async def get_approval(self, approval_id: int) -> Optional[Approval]:
        """Fetch an approval by id."""

    async def get_approval_by_token(self, token: str) -> Optional[Approval]:
        """Fetch the approval holding ``token``."""

    async def list_approvals(
        self,
        gate_id: Optional[int] = None,
        instance_id: Optional[int] = None,
        approver_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Approval]:
        """Approvals matching the filters in id order."""

    # migrations --------------------------------------------------------
    async def save_migration(self, migration: InstanceMigration) -> InstanceMigration:
        """Record an instance migration."""

    async def list_migrations(self, instance_id: Optional[int] = None) -> list[InstanceMigration]:
        """Migration records in id order."""
