"""Durable records persisted by nodeflow stores."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Instance statuses
STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_WAITING = "waiting"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)
ACTIVE_STATUSES = (STATUS_RUNNING, STATUS_WAITING)

# Version statuses
VERSION_DRAFT = "draft"
VERSION_PUBLISHED = "published"
VERSION_ARCHIVED = "archived"

# Execution log statuses
LOG_COMPLETED = "completed"
LOG_WAITING = "waiting"
LOG_FAILED = "failed"

# Gate / approval statuses
GATE_PENDING = "pending"
GATE_APPROVED = "approved"
GATE_REJECTED = "rejected"
GATE_EXPIRED = "expired"
GATE_CANCELLED = "cancelled"

APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_REJECTED = "rejected"
APPROVAL_ABSTAINED = "abstained"
APPROVAL_DELEGATED = "delegated"
APPROVAL_EXPIRED = "expired"
APPROVAL_CANCELLED = "cancelled"


class WorkflowDefinition(BaseModel):
    """Identity of a workflow; owns a history of versions."""

    id: Optional[int] = None
    slug: str
    name: str = ""
    description: Optional[str] = None
    entity_type: Optional[str] = None
    is_active: bool = False
    current_version_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowVersion(BaseModel):
    """A numbered node graph belonging to a definition."""

    id: Optional[int] = None
    definition_id: int
    version_number: int
    definition: dict[str, Any] = Field(default_factory=dict)
    canvas_layout: Optional[dict[str, Any]] = None
    status: str = VERSION_DRAFT
    change_notes: Optional[str] = None
    published_by: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowInstance(BaseModel):
    """Mutable execution record of one run of a workflow version."""

    id: Optional[int] = None
    definition_id: int
    version_id: int
    status: str = STATUS_PENDING
    context: dict[str, Any] = Field(default_factory=dict)
    active_nodes: list[str] = Field(default_factory=list)
    error_info: Optional[dict[str, Any]] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    started_by: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class WorkflowExecutionLog(BaseModel):
    """Append-only audit row for a single node visit.

    ``id`` is assigned by the store from a monotonic sequence and is used to
    order visits when timestamps collide.
    """

    id: Optional[int] = None
    instance_id: int
    node_id: str
    node_type: str
    attempt_number: int = 1
    status: str = LOG_COMPLETED
    input_data: Optional[dict[str, Any]] = None
    output_data: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class ApprovalGate(BaseModel):
    """Approval configuration bound to one visit of an ``approval`` node."""

    id: Optional[int] = None
    instance_id: int
    node_id: str
    approval_type: str = "threshold"
    threshold_config: Optional[dict[str, Any]] = None
    approver_rule: dict[str, Any] = Field(default_factory=dict)
    required_count: int = 1
    expected_approvers: Optional[list[str]] = None
    allow_delegation: bool = False
    allow_parallel: bool = True
    serial_pick_next: bool = False
    on_satisfied_transition: Optional[str] = None
    on_denied_transition: Optional[str] = None
    status: str = GATE_PENDING
    approved_count: int = 0
    rejected_count: int = 0
    abstained_count: int = 0
    current_approver_id: Optional[str] = None
    current_order: int = 1
    approval_chain: list[dict[str, Any]] = Field(default_factory=list)
    exclude_member_ids: list[str] = Field(default_factory=list)
    deadline: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_met(self) -> bool:
        return self.status == GATE_APPROVED

    @property
    def is_pending(self) -> bool:
        return self.status == GATE_PENDING


class Approval(BaseModel):
    """One approver's token and decision on a gate."""

    id: Optional[int] = None
    gate_id: int
    instance_id: int
    approver_id: str
    order: int = 1
    token: Optional[str] = None
    status: str = APPROVAL_PENDING
    decision: Optional[str] = None
    comment: Optional[str] = None
    delegated_from: Optional[str] = None
    next_approver_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    responded_at: Optional[datetime] = None


class InstanceMigration(BaseModel):
    """Audit record of moving an instance between versions."""

    id: Optional[int] = None
    instance_id: int
    from_version_id: int
    to_version_id: int
    migrated_by: Optional[str] = None
    node_mapping: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
