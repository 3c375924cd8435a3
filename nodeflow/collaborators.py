"""Interfaces to the services nodeflow consumes but does not own.

Each collaborator is a ``Protocol``; the in-memory implementations below are
used by tests and by the CLI when nothing else is wired in.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol

logger = logging.getLogger(__name__)


class SettingsLookup(Protocol):
    """Key/value application settings."""

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return the setting value or ``default``."""


class MembershipDirectory(Protocol):
    """Permission and role membership queries."""

    def members_with_permission(self, permission: str) -> list[str]:
        """Member ids holding ``permission``."""

    def members_with_role(self, role: str) -> list[str]:
        """Member ids holding ``role``."""

    def has_permission(self, member_id: str, permission: str) -> bool:
        """Whether the member holds ``permission``."""

    def has_role(self, member_id: str, role: str) -> bool:
        """Whether the member holds ``role``."""


class NotificationSink(Protocol):
    """Outbound notification delivery (mail and similar)."""

    async def send(
        self, mailer: str, method: str, to: Any, variables: dict[str, Any]
    ) -> None:
        """Hand off a notification; delivery is fire-and-forget."""


class EntityStore(Protocol):
    """Access to the business entity a workflow instance is bound to."""

    async def get_entity(self, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        """Return the entity's fields or ``None``."""

    async def update_entity(
        self, entity_type: str, entity_id: str, values: dict[str, Any]
    ) -> Optional[dict[str, Any]]:
        """Persist ``values`` onto the entity and return its new fields."""


# ----------------------------------------------------------------------
# In-memory implementations
class StaticSettings(SettingsLookup):
    """Settings served from a dict (e.g. the ``settings`` config section)."""

    def __init__(self, values: Optional[Dict[str, Any]] = None) -> None:
        self.values: Dict[str, Any] = dict(values or {})

    def get_setting(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


class StaticDirectory(MembershipDirectory):
    """Membership data held in memory.

    ``members`` maps member id to ``{"roles": [...], "permissions": [...]}``.
    """

    def __init__(self, members: Optional[Dict[str, Dict[str, Iterable[str]]]] = None) -> None:
        self._members: Dict[str, Dict[str, set[str]]] = {}
        for member_id, grants in (members or {}).items():
            self.add_member(
                member_id,
                roles=grants.get("roles", ()),
                permissions=grants.get("permissions", ()),
            )

    def add_member(
        self,
        member_id: str,
        roles: Iterable[str] = (),
        permissions: Iterable[str] = (),
    ) -> None:
        self._members[str(member_id)] = {
            "roles": set(roles),
            "permissions": set(permissions),
        }

    def members_with_permission(self, permission: str) -> list[str]:
        return [m for m, g in self._members.items() if permission in g["permissions"]]

    def members_with_role(self, role: str) -> list[str]:
        return [m for m, g in self._members.items() if role in g["roles"]]

    def has_permission(self, member_id: str, permission: str) -> bool:
        grants = self._members.get(str(member_id))
        return bool(grants) and permission in grants["permissions"]

    def has_role(self, member_id: str, role: str) -> bool:
        grants = self._members.get(str(member_id))
        return bool(grants) and role in grants["roles"]


class LoggingNotificationSink(NotificationSink):
    """Record notifications and log them instead of delivering."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send(
        self, mailer: str, method: str, to: Any, variables: dict[str, Any]
    ) -> None:
        logger.info(f"Notification {mailer}.{method} to {to}")
        self.sent.append({"mailer": mailer, "method": method, "to": to, "vars": variables})


class InMemoryEntityStore(EntityStore):
    """Entities stored as dicts keyed by ``(entity_type, entity_id)``."""

    def __init__(self) -> None:
        self._entities: Dict[tuple[str, str], Dict[str, Any]] = {}

    def put(self, entity_type: str, entity_id: str, values: Dict[str, Any]) -> None:
        self._entities[(entity_type, str(entity_id))] = dict(values)

    async def get_entity(self, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        entity = self._entities.get((entity_type, str(entity_id)))
        return copy.deepcopy(entity) if entity is not None else None

    async def update_entity(
        self, entity_type: str, entity_id: str, values: dict[str, Any]
    ) -> Optional[dict[str, Any]]:
        entity = self._entities.get((entity_type, str(entity_id)))
        if entity is None:
            return None
        entity.update(values)
        return copy.deepcopy(entity)


class Collaborators:
    """Bundle of external services handed to the engine and its subsystems."""

    def __init__(
        self,
        settings: Optional[SettingsLookup] = None,
        directory: Optional[MembershipDirectory] = None,
        notifier: Optional[NotificationSink] = None,
        entities: Optional[EntityStore] = None,
    ) -> None:
        self.settings = settings or StaticSettings()
        self.directory = directory or StaticDirectory()
        self.notifier = notifier or LoggingNotificationSink()
        self.entities = entities
