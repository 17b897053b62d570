from __future__ import annotations

from collections.abc import Iterable
from types import MappingProxyType
from typing import Mapping, Protocol, TypeVar

from crmcore.security.permissions import Role, assignment_document, parse_role


class HasRole(Protocol):
    role: str


UserT = TypeVar("UserT", bound=HasRole)


def _build_hierarchy() -> Mapping[Role, frozenset[Role]]:
    document = assignment_document()
    return MappingProxyType(
        {role: frozenset(Role(target) for target in document.get(role.value, [])) for role in Role}
    )


ASSIGNABLE_ROLES = _build_hierarchy()


def assignable_roles(actor_role: Role | str | None) -> frozenset[Role]:
    parsed = parse_role(actor_role)
    if parsed is None:
        return frozenset()
    return ASSIGNABLE_ROLES[parsed]


def can_assign(actor_role: Role | str | None, target_role: Role | str | None) -> bool:
    target = parse_role(target_role)
    return target is not None and target in assignable_roles(actor_role)


def assignable_users(users: Iterable[UserT], actor_role: Role | str | None) -> list[UserT]:
    allowed = assignable_roles(actor_role)
    return [user for user in users if parse_role(user.role) in allowed]
