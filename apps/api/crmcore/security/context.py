from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from crmcore.security.permissions import PermissionSet, Role, get_permissions


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller resolved from the bearer token and the users table."""

    user_id: uuid.UUID
    role: Role
    email: str = ""
    region: str | None = None
    can_raise_tickets: bool = True
    permissions: PermissionSet = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "permissions", get_permissions(self.role))

    @property
    def id_str(self) -> str:
        return str(self.user_id)


@dataclass(frozen=True, slots=True)
class EntityState:
    """Snapshot of the guarded entity loaded before the handler runs."""

    entity_type: str
    entity_id: str
    finalization_status: str | None = None
    owners: dict[str, str | None] = field(default_factory=dict)
