"""Base class and shared operator semantics for leaf condition types."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any

from ..expressions import MISSING, is_numeric, lookup, to_number

if TYPE_CHECKING:  # pragma: no cover
    from .evaluator import ConditionEvaluator

FIELD_OPERATORS = (
    "eq",
    "neq",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "not_in",
    "is_set",
    "is_empty",
    "contains",
    "starts_with",
    "ends_with",
)


class ConditionType(abc.ABC):
    """A named, registrable leaf condition."""

    name: str = ""
    description: str = ""
    # keys whose presence identifies this condition when no ``type`` is given
    keys: tuple[str, ...] = ()

    @abc.abstractmethod
    def evaluate(
        self, params: dict[str, Any], context: dict[str, Any], evaluator: "ConditionEvaluator"
    ) -> bool:
        """Return whether the condition holds; never raise for bad input."""
        raise NotImplementedError

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "keys": list(self.keys)}


def loose_equals(a: Any, b: Any) -> bool:
    if is_numeric(a) and is_numeric(b):
        return to_number(a) == to_number(b)
    if isinstance(a, str) != isinstance(b, str) and a is not None and b is not None:
        return str(a) == str(b)
    return a == b


def _ordered(a: Any, b: Any, op: str) -> bool:
    if is_numeric(a) and is_numeric(b):
        a, b = to_number(a), to_number(b)
    try:
        if op == "gt":
            return a > b
        if op == "gte":
            return a >= b
        if op == "lt":
            return a < b
        return a <= b
    except TypeError:
        return False


def compare_values(actual: Any, operator: str, expected: Any) -> bool:
    """Apply a named comparison operator; unknown operators are ``False``."""
    if actual is MISSING:
        actual = None
    if operator == "is_set":
        return actual is not None
    if operator == "is_empty":
        return actual is None or actual == "" or actual == [] or actual == {}
    if operator == "eq":
        return loose_equals(actual, expected)
    if operator == "neq":
        return not loose_equals(actual, expected)
    if operator in ("gt", "gte", "lt", "lte"):
        if actual is None or expected is None:
            return False
        return _ordered(actual, expected, operator)
    if operator == "in":
        return isinstance(expected, (list, tuple)) and any(
            loose_equals(actual, item) for item in expected
        )
    if operator == "not_in":
        return isinstance(expected, (list, tuple)) and not any(
            loose_equals(actual, item) for item in expected
        )
    if operator in ("contains", "starts_with", "ends_with"):
        if not isinstance(actual, str) or not isinstance(expected, str):
            return False
        if operator == "contains":
            return expected in actual
        if operator == "starts_with":
            return actual.startswith(expected)
        return actual.endswith(expected)
    return False


def resolve_field(context: dict[str, Any], path: str) -> Any:
    """Look ``path`` up at the context root, then under ``entity``."""
    value = lookup(context, path)
    if value is not MISSING and value is not None:
        return value
    return lookup(context, f"entity.{path}")
