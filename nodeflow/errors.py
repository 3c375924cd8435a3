"""Exception types used inside nodeflow.

Public operations translate these into failed ``ServiceResult`` objects; only
``StoreError`` is expected to escape to callers.
"""

from __future__ import annotations

from typing import Optional


class NodeflowError(Exception):
    """Base class for nodeflow errors."""


class NodeExecutionError(NodeflowError):
    """A node handler failed while interpreting a node."""

    def __init__(self, node_id: str, message: str, attempts: Optional[int] = None) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.attempts = attempts


class StoreError(NodeflowError):
    """Persistence backend failure."""
