"""Built-in leaf condition types."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from ..expressions import MISSING, parse_deadline, resolve_path
from ..models import utcnow
from .base import ConditionType, compare_values, resolve_field

if TYPE_CHECKING:  # pragma: no cover
    from .evaluator import ConditionEvaluator

_UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return parse_deadline(value)
    if isinstance(value, str) and value:
        return parse_deadline(value)
    return None


class PermissionCondition(ConditionType):
    name = "permission"
    description = "Checks if the user has a specific permission"
    keys = ("permission",)

    def evaluate(self, params, context, evaluator):
        permission = params.get("permission")
        if not permission:
            return False
        granted = context.get("user_permissions")
        if granted is not None:
            return permission in granted
        user_id = context.get("user_id")
        if user_id is None or evaluator.directory is None:
            return False
        return evaluator.directory.has_permission(str(user_id), permission)


class RoleCondition(ConditionType):
    name = "role"
    description = "Checks if the user holds a specific role"
    keys = ("role",)

    def evaluate(self, params, context, evaluator):
        role = params.get("role")
        if not role:
            return False
        granted = context.get("user_roles")
        if granted is not None:
            return role in granted
        user_id = context.get("user_id")
        if user_id is None or evaluator.directory is None:
            return False
        return evaluator.directory.has_role(str(user_id), role)


class FieldCondition(ConditionType):
    name = "field"
    description = "Compares entity or context field values using dot notation"
    keys = ("field",)

    def evaluate(self, params, context, evaluator):
        path = params.get("field")
        if not path:
            return False
        value = resolve_field(context, str(path))
        return compare_values(value, params.get("operator", "eq"), params.get("value"))


class OwnershipCondition(ConditionType):
    name = "ownership"
    description = "Checks the user's relationship to the entity"
    keys = ("ownership",)

    def evaluate(self, params, context, evaluator):
        kind = params.get("ownership")
        user_id = context.get("user_id")
        if kind is None or user_id is None:
            return False
        entity = context.get("entity") or {}
        if kind == "requester":
            return self._is_requester(user_id, entity)
        if kind == "recipient":
            return self._is_recipient(user_id, entity)
        if kind == "parent_of_minor":
            return self._is_parent_of_minor(context, entity)
        if kind == "any":
            return (
                self._is_requester(user_id, entity)
                or self._is_recipient(user_id, entity)
                or self._is_parent_of_minor(context, entity)
            )
        return False

    @staticmethod
    def _same(a: Any, b: Any) -> bool:
        return a is not None and b is not None and str(a) == str(b)

    def _is_requester(self, user_id: Any, entity: dict) -> bool:
        return self._same(entity.get("requester_id"), user_id) or self._same(
            entity.get("created_by"), user_id
        )

    def _is_recipient(self, user_id: Any, entity: dict) -> bool:
        return self._same(entity.get("member_id"), user_id)

    def _is_parent_of_minor(self, context: dict, entity: dict) -> bool:
        managed = context.get("user_managed_member_ids") or []
        member_id = entity.get("member_id")
        if member_id is None:
            return False
        return any(self._same(member_id, m) for m in managed)


class ApprovalGateCondition(ConditionType):
    name = "approval_gate"
    description = "Checks if a named approval gate is met or not met"
    keys = ("approval_gate",)

    def evaluate(self, params, context, evaluator):
        gate_name = params.get("approval_gate")
        if gate_name is None:
            return False
        gates = context.get("approval_gates") or {}
        gate = gates.get(str(gate_name))
        if not isinstance(gate, dict):
            return False
        is_met = bool(gate.get("is_met", False))
        return is_met if params.get("status", "met") == "met" else not is_met


class TimeCondition(ConditionType):
    name = "time"
    description = "Time-based checks: state duration and date field comparisons"
    keys = ("time",)

    def evaluate(self, params, context, evaluator):
        kind = params.get("time")
        now = _as_datetime(context.get("now")) or utcnow()
        if kind == "state_duration":
            return self._state_duration(params, context, now)
        if kind == "field_date":
            return self._field_date(params, context, now)
        return False

    def _state_duration(self, params: dict, context: dict, now: datetime) -> bool:
        entered = _as_datetime(context.get("state_entered_at"))
        if entered is None:
            return False
        elapsed = (now - entered).total_seconds()
        unit = params.get("unit", "hours")
        duration = elapsed / _UNIT_SECONDS.get(unit, 3600)
        try:
            expected = float(params.get("value", 0))
        except (TypeError, ValueError):
            return False
        return compare_values(duration, params.get("operator", "gt"), expected)

    def _field_date(self, params: dict, context: dict, now: datetime) -> bool:
        path = params.get("field")
        if not path:
            return False
        field_date = _as_datetime(resolve_field(context, str(path)))
        if field_date is None:
            return False
        raw = params.get("value", "now")
        compare_date = now if raw == "now" else _as_datetime(raw)
        if compare_date is None:
            return False
        return compare_values(
            field_date.timestamp(), params.get("operator", "lt"), compare_date.timestamp()
        )


class WorkflowContextCondition(ConditionType):
    name = "workflow_context"
    description = "Checks accumulated data in the workflow instance context"
    keys = ("workflow_context",)

    def evaluate(self, params, context, evaluator):
        key = params.get("workflow_context")
        if not key:
            return False
        instance_context = resolve_path(context, "instance.context")
        if not isinstance(instance_context, dict):
            instance_context = context
        value = resolve_path(instance_context, str(key), MISSING)
        return compare_values(value, params.get("operator", "eq"), params.get("value"))


def builtin_conditions() -> list[ConditionType]:
    # ``field`` goes last: ``time`` leaves also carry a ``field`` key
    return [
        PermissionCondition(),
        RoleCondition(),
        OwnershipCondition(),
        ApprovalGateCondition(),
        TimeCondition(),
        WorkflowContextCondition(),
        FieldCondition(),
    ]
