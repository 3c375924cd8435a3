"""Action interface, results and the per-run action context."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, Field

from ..collaborators import Collaborators
from ..expressions import ContextResolver

if TYPE_CHECKING:  # pragma: no cover
    from ..approvals import ApprovalGateManager


class ActionResult(BaseModel):
    """Outcome of a single action in a chain."""

    type: str
    success: bool
    reason: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    optional: bool = False


class ActionChainResult(BaseModel):
    """Outcome of an ordered chain of actions."""

    success: bool
    reason: Optional[str] = None
    results: list[ActionResult] = Field(default_factory=list)


class ActionContext:
    """Runtime handle passed to every action.

    ``context`` is the instance's context document itself, not a copy:
    actions that write to it (``set_context``) are visible to every later
    node and branch of the same instance.
    """

    def __init__(
        self,
        context: Optional[dict[str, Any]] = None,
        instance_id: Optional[int] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        started_by: Optional[str] = None,
        collaborators: Optional[Collaborators] = None,
        approvals: Optional["ApprovalGateManager"] = None,
        webhook_timeout: float = 10.0,
    ) -> None:
        self.context = context if context is not None else {}
        self.instance_id = instance_id
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.started_by = started_by
        self.collaborators = collaborators or Collaborators()
        self.approvals = approvals
        self.webhook_timeout = webhook_timeout
        self.resolver = ContextResolver(self.collaborators.settings)
        self._entity: Optional[dict[str, Any]] = None

    @property
    def has_entity(self) -> bool:
        return bool(
            self.entity_type
            and self.entity_id is not None
            and self.collaborators.entities is not None
        )

    async def load_entity(self) -> Optional[dict[str, Any]]:
        if not self.has_entity:
            return None
        if self._entity is None:
            self._entity = await self.collaborators.entities.get_entity(
                self.entity_type, str(self.entity_id)
            )
        return self._entity

    async def update_entity(self, values: dict[str, Any]) -> Optional[dict[str, Any]]:
        if not self.has_entity:
            return None
        updated = await self.collaborators.entities.update_entity(
            self.entity_type, str(self.entity_id), values
        )
        self._entity = updated
        return updated

    async def scope(self) -> dict[str, Any]:
        """Document that templates and ``$.`` paths are resolved against."""
        scope = dict(self.context)
        scope.setdefault("entity", await self.load_entity())
        scope.setdefault(
            "instance",
            {
                "id": self.instance_id,
                "entity_type": self.entity_type,
                "entity_id": self.entity_id,
                "started_by": self.started_by,
            },
        )
        return scope


class Action(abc.ABC):
    """A named, registrable side-effecting step."""

    name: str = ""
    description: str = ""

    @abc.abstractmethod
    async def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        """Run the action with already-resolved ``params``."""
        raise NotImplementedError

    def ok(self, **data: Any) -> ActionResult:
        return ActionResult(type=self.name, success=True, data=data)

    def fail(self, reason: str, **data: Any) -> ActionResult:
        return ActionResult(type=self.name, success=False, reason=reason, data=data)

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description}
