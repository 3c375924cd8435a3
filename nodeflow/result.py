"""Typed success/failure envelope returned by public nodeflow operations."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class ServiceResult(BaseModel):
    """Outcome of an engine, approval or version operation.

    Public operations never raise for expected failures (illegal state
    transitions, validation problems, denied conditions). They return a
    failed result whose ``reason`` names the violated rule instead.
    """

    success: bool
    reason: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "ServiceResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, reason: str, **data: Any) -> "ServiceResult":
        return cls(success=False, reason=reason, data=data)

    def is_success(self) -> bool:
        return self.success

    def __bool__(self) -> bool:
        return self.success
