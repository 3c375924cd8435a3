"""Explicit registry of action types."""

from __future__ import annotations

from typing import Any, Optional

from .base import Action


class ActionRegistry:
    """Maps action type names to ``Action`` instances."""

    def __init__(self) -> None:
        self._actions: dict[str, Action] = {}

    def register(self, action: Action, name: Optional[str] = None) -> None:
        self._actions[name or action.name] = action

    def unregister(self, name: str) -> None:
        self._actions.pop(name, None)

    def get(self, name: str) -> Optional[Action]:
        return self._actions.get(name)

    def names(self) -> list[str]:
        return list(self._actions)

    def __contains__(self, name: str) -> bool:
        return name in self._actions

    def describe(self) -> list[dict[str, Any]]:
        return [action.describe() for action in self._actions.values()]
