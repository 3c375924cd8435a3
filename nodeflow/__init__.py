"""nodeflow: durable node-graph workflow engine with approval gates."""

from .approvals import ApprovalGateManager
from .collaborators import Collaborators
from .config import NodeflowConfig, load_config
from .engine import WorkflowEngine
from .graph import WorkflowGraph
from .persistence import get_store
from .result import ServiceResult
from .versions import VersionManager, validate_definition

__version__ = "0.1.0"
__all__ = [
    "ApprovalGateManager",
    "Collaborators",
    "NodeflowConfig",
    "ServiceResult",
    "VersionManager",
    "WorkflowEngine",
    "WorkflowGraph",
    "get_store",
    "load_config",
    "validate_definition",
]
