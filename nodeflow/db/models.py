"""SQLModel tables backing the SQL store.

Each table keeps the columns the store filters on and a ``data`` JSON
column holding the full record; ``nodeflow.models`` stays the single
source of truth for record shapes.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class DefinitionRow(SQLModel, table=True):
    __tablename__ = "workflow_definitions"

    id: Optional[int] = Field(default=None, primary_key=True)
    slug: str = Field(index=True, unique=True)
    data: dict = Field(sa_column=Column(JSON))


class VersionRow(SQLModel, table=True):
    __tablename__ = "workflow_versions"

    id: Optional[int] = Field(default=None, primary_key=True)
    definition_id: int = Field(index=True)
    version_number: int
    status: str = Field(default="draft", index=True)
    data: dict = Field(sa_column=Column(JSON))


class InstanceRow(SQLModel, table=True):
    __tablename__ = "workflow_instances"

    id: Optional[int] = Field(default=None, primary_key=True)
    definition_id: int = Field(index=True)
    version_id: int = Field(index=True)
    status: str = Field(default="pending", index=True)
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    data: dict = Field(sa_column=Column(JSON))


class ExecutionLogRow(SQLModel, table=True):
    __tablename__ = "workflow_execution_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    instance_id: int = Field(index=True)
    node_id: str
    status: str
    data: dict = Field(sa_column=Column(JSON))


class GateRow(SQLModel, table=True):
    __tablename__ = "workflow_approval_gates"

    id: Optional[int] = Field(default=None, primary_key=True)
    instance_id: int = Field(index=True)
    node_id: str
    status: str = Field(default="pending", index=True)
    data: dict = Field(sa_column=Column(JSON))


class ApprovalRow(SQLModel, table=True):
    __tablename__ = "workflow_approvals"

    id: Optional[int] = Field(default=None, primary_key=True)
    gate_id: int = Field(index=True)
    instance_id: int = Field(index=True)
    approver_id: str
    status: str = Field(default="pending", index=True)
    token: Optional[str] = Field(default=None, index=True)
    data: dict = Field(sa_column=Column(JSON))


class MigrationRow(SQLModel, table=True):
    __tablename__ = "workflow_instance_migrations"

    id: Optional[int] = Field(default=None, primary_key=True)
    instance_id: int = Field(index=True)
    data: dict = Field(sa_column=Column(JSON))
