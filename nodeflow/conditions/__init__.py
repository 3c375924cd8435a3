"""Condition evaluation: combinators, registry and built-in leaf types."""

from .base import FIELD_OPERATORS, ConditionType, compare_values
from .builtin import (
    ApprovalGateCondition,
    FieldCondition,
    OwnershipCondition,
    PermissionCondition,
    RoleCondition,
    TimeCondition,
    WorkflowContextCondition,
)
from .evaluator import ConditionEvaluator, default_condition_registry
from .registry import ConditionRegistry

__all__ = [
    "FIELD_OPERATORS",
    "ApprovalGateCondition",
    "ConditionEvaluator",
    "ConditionRegistry",
    "ConditionType",
    "FieldCondition",
    "OwnershipCondition",
    "PermissionCondition",
    "RoleCondition",
    "TimeCondition",
    "WorkflowContextCondition",
    "compare_values",
    "default_condition_registry",
]
