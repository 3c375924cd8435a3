from .database import WorkflowDB, async_database_url
from .models import (
    ApprovalRow,
    DefinitionRow,
    ExecutionLogRow,
    GateRow,
    InstanceRow,
    MigrationRow,
    VersionRow,
)

__all__ = [
    "WorkflowDB",
    "async_database_url",
    "ApprovalRow",
    "DefinitionRow",
    "ExecutionLogRow",
    "GateRow",
    "InstanceRow",
    "MigrationRow",
    "VersionRow",
]
