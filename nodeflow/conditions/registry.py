"""Explicit registry of leaf condition types."""

from __future__ import annotations

from typing import Any, Optional

from .base import ConditionType


class ConditionRegistry:
    """Maps condition names to ``ConditionType`` instances.

    Detection of an untyped leaf walks the types in registration order and
    picks the first whose identifying key is present.
    """

    def __init__(self) -> None:
        self._types: dict[str, ConditionType] = {}

    def register(self, condition: ConditionType, name: Optional[str] = None) -> None:
        self._types[name or condition.name] = condition

    def unregister(self, name: str) -> None:
        self._types.pop(name, None)

    def get(self, name: str) -> Optional[ConditionType]:
        return self._types.get(name)

    def names(self) -> list[str]:
        return list(self._types)

    def __contains__(self, name: str) -> bool:
        return name in self._types

    def detect(self, spec: dict[str, Any]) -> Optional[ConditionType]:
        kind = spec.get("type")
        if kind is not None:
            return self._types.get(kind)
        for condition in self._types.values():
            if any(spec.get(key) is not None for key in condition.keys):
                return condition
        return None

    def describe(self) -> list[dict[str, Any]]:
        return [condition.describe() for condition in self._types.values()]
