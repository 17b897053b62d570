"""Access-control guard pipeline.

Each guard is a plain function of :class:`GuardContext` returning a
:class:`Decision`. A :class:`GuardChain` runs them in order and stops at the
first denial, so the outcome depends only on the actor's role, the route's
requirements, the loaded entity state and the submitted item count.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from crmcore.security.context import Actor, EntityState
from crmcore.security.errors import (
    AppError,
    AuthenticationError,
    AuthorizationError,
    BulkLimitExceededError,
    FinalizedEntityError,
)
from crmcore.security.permissions import MANAGERS, PermissionFlag, Role

FINALIZED = "Finalized"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

_METHOD_FLAGS = {
    "POST": PermissionFlag.CAN_CREATE,
    "PUT": PermissionFlag.CAN_EDIT,
    "PATCH": PermissionFlag.CAN_EDIT,
    "DELETE": PermissionFlag.CAN_DELETE,
}


@dataclass(frozen=True, slots=True)
class Decision:
    allowed: bool
    status_code: int = 200
    reason: str = ""
    event_type: str | None = None
    severity: str = "low"
    details: dict[str, Any] = field(default_factory=dict)

    def to_error(self) -> AppError:
        if self.status_code == 401:
            return AuthenticationError(self.reason)
        if self.event_type == "FINALIZED_EDIT_ATTEMPT":
            return FinalizedEntityError(self.reason)
        if self.event_type == "BULK_OPERATION_LIMIT_EXCEEDED":
            return BulkLimitExceededError(self.details["limit"], self.details["received"])
        return AuthorizationError(self.reason)


ALLOW = Decision(allowed=True)


def deny(
    reason: str,
    event_type: str,
    *,
    status_code: int = 403,
    severity: str = "medium",
    **details: Any,
) -> Decision:
    return Decision(
        allowed=False,
        status_code=status_code,
        reason=reason,
        event_type=event_type,
        severity=severity,
        details=details,
    )


@dataclass(slots=True)
class GuardContext:
    actor: Actor | None
    method: str
    path: str
    entity: EntityState | None = None
    item_count: int | None = None

    @property
    def is_mutation(self) -> bool:
        return self.method.upper() in MUTATING_METHODS


Guard = Callable[[GuardContext], Decision]


def authenticated(ctx: GuardContext) -> Decision:
    if ctx.actor is None:
        return deny("invalid or missing token", "UNAUTHORIZED_ACCESS", status_code=401, path=ctx.path)
    return ALLOW


def require_roles(roles: Iterable[Role], *, name: str | None = None) -> Guard:
    allowed_roles = frozenset(roles)

    def guard(ctx: GuardContext) -> Decision:
        if ctx.actor is None or ctx.actor.role not in allowed_roles:
            return deny(
                "insufficient role",
                "ROLE_ACCESS_DENIED",
                role=ctx.actor.role.value if ctx.actor else None,
                required_roles=sorted(role.value for role in allowed_roles),
            )
        return ALLOW

    guard.__name__ = name or "require_roles"
    return guard


def require_permission(flag: PermissionFlag) -> Guard:
    def guard(ctx: GuardContext) -> Decision:
        if ctx.actor is None or not ctx.actor.permissions.allows(flag):
            return deny(
                f"missing permission: {flag.value}",
                "PERMISSION_DENIED",
                role=ctx.actor.role.value if ctx.actor else None,
                permission=flag.value,
            )
        return ALLOW

    guard.__name__ = f"require_{flag.value}"
    return guard


def require_any_permission(*flags: PermissionFlag) -> Guard:
    def guard(ctx: GuardContext) -> Decision:
        if ctx.actor is None or not any(ctx.actor.permissions.allows(flag) for flag in flags):
            return deny(
                f"missing permission: {' or '.join(flag.value for flag in flags)}",
                "PERMISSION_DENIED",
                role=ctx.actor.role.value if ctx.actor else None,
                permission=[flag.value for flag in flags],
            )
        return ALLOW

    return guard


def read_only_guard(ctx: GuardContext) -> Decision:
    flag = _METHOD_FLAGS.get(ctx.method.upper())
    if flag is None or ctx.actor is None:
        return ALLOW
    if not ctx.actor.permissions.allows(flag):
        return deny(
            "read-only access",
            "READ_ONLY_VIOLATION",
            role=ctx.actor.role.value,
            method=ctx.method.upper(),
            permission=flag.value,
        )
    return ALLOW


def finalized_entity_guard(ctx: GuardContext) -> Decision:
    if not ctx.is_mutation or ctx.entity is None or ctx.actor is None:
        return ALLOW
    if ctx.entity.finalization_status != FINALIZED:
        return ALLOW
    if ctx.actor.permissions.allows(PermissionFlag.CAN_EDIT_FINALIZED):
        return ALLOW
    return deny(
        "entity finalized",
        "FINALIZED_EDIT_ATTEMPT",
        severity="high",
        role=ctx.actor.role.value,
        entity_type=ctx.entity.entity_type,
        entity_id=ctx.entity.entity_id,
        method=ctx.method.upper(),
    )


@dataclass(frozen=True, slots=True)
class OwnershipRule:
    entity_type: str
    allow_managers: bool = True
    ownership_field: str = "assigned_to_id"
    alternate_fields: tuple[str, ...] = ("raised_by_id",)

    @property
    def fields(self) -> tuple[str, ...]:
        return (self.ownership_field, *self.alternate_fields)


def ownership_guard(rule: OwnershipRule) -> Guard:
    def guard(ctx: GuardContext) -> Decision:
        if ctx.actor is None or ctx.entity is None:
            return ALLOW
        if rule.allow_managers and (
            ctx.actor.permissions.allows(PermissionFlag.CAN_UPDATE_ALL_TASKS) or ctx.actor.role in MANAGERS
        ):
            return ALLOW
        owners = {ctx.entity.owners.get(name) for name in rule.fields}
        if ctx.actor.id_str in owners:
            return ALLOW
        return deny(
            f"not the owner of this {rule.entity_type}",
            "RESOURCE_OWNERSHIP_VIOLATION",
            role=ctx.actor.role.value,
            entity_type=rule.entity_type,
            entity_id=ctx.entity.entity_id,
        )

    guard.__name__ = f"ownership_{rule.entity_type}"
    return guard


def bulk_limit_guard(max_items: int | Callable[[], int]) -> Guard:
    def guard(ctx: GuardContext) -> Decision:
        limit = max_items() if callable(max_items) else max_items
        if ctx.item_count is None or ctx.item_count <= limit:
            return ALLOW
        return deny(
            "too many items",
            "BULK_OPERATION_LIMIT_EXCEEDED",
            status_code=400,
            limit=limit,
            received=ctx.item_count,
        )

    guard.__name__ = "bulk_limit"
    return guard


class GuardChain:
    """Ordered guards evaluated with short-circuit on the first denial."""

    def __init__(self, guards: Sequence[Guard]) -> None:
        self.guards: tuple[Guard, ...] = (authenticated, *[g for g in guards if g is not authenticated])

    def evaluate(self, ctx: GuardContext) -> Decision:
        for guard in self.guards:
            decision = guard(ctx)
            if not decision.allowed:
                return decision
        return ALLOW

    def __add__(self, other: Sequence[Guard]) -> GuardChain:
        return GuardChain([*self.guards, *other])
