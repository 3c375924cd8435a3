"""Boolean combinators over registered leaf conditions."""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..collaborators import MembershipDirectory
from ..expressions import evaluate_expression
from .builtin import builtin_conditions
from .registry import ConditionRegistry

logger = logging.getLogger(__name__)


def default_condition_registry() -> ConditionRegistry:
    registry = ConditionRegistry()
    for condition in builtin_conditions():
        registry.register(condition)
    return registry


class ConditionEvaluator:
    """Evaluate nested ``all``/``any``/``not`` condition specs.

    Conditions fail closed: malformed specs, unknown leaf types and unknown
    operators all evaluate to ``False``.
    """

    def __init__(
        self,
        registry: Optional[ConditionRegistry] = None,
        directory: Optional[MembershipDirectory] = None,
    ) -> None:
        self.registry = registry or default_condition_registry()
        self.directory = directory

    def evaluate(self, spec: Any, context: dict[str, Any]) -> bool:
        if isinstance(spec, str):
            return evaluate_expression(spec, context)
        if not isinstance(spec, dict):
            return False
        if "all" in spec:
            items = spec["all"]
            if not isinstance(items, list):
                return False
            return all(self.evaluate(item, context) for item in items)
        if "any" in spec:
            items = spec["any"]
            if not isinstance(items, list):
                return False
            return any(self.evaluate(item, context) for item in items)
        if "not" in spec:
            nested = spec["not"]
            if not isinstance(nested, (dict, str)):
                return False
            return not self.evaluate(nested, context)
        if "expression" in spec and "type" not in spec:
            return evaluate_expression(spec["expression"], context)
        return self._evaluate_leaf(spec, context)

    def _evaluate_leaf(self, spec: dict[str, Any], context: dict[str, Any]) -> bool:
        condition = self.registry.detect(spec)
        if condition is None:
            logger.debug(f"No condition type matches {spec!r}")
            return False
        try:
            return bool(condition.evaluate(spec, context, self))
        except (TypeError, ValueError, KeyError, AttributeError) as exc:
            logger.warning(f"Condition '{condition.name}' failed closed: {exc}")
            return False
