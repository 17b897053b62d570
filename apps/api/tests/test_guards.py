from __future__ import annotations

import uuid

from crmcore.security.context import Actor, EntityState
from crmcore.security.errors import AuthenticationError, BulkLimitExceededError, FinalizedEntityError
from crmcore.security.guards import (
    GuardChain,
    GuardContext,
    OwnershipRule,
    bulk_limit_guard,
    finalized_entity_guard,
    ownership_guard,
    read_only_guard,
    require_permission,
    require_roles,
)
from crmcore.security.permissions import MANAGERS, PermissionFlag, Role


def _actor(role: Role) -> Actor:
    return Actor(user_id=uuid.uuid4(), role=role)


def _task(owner: Actor | None = None, status: str | None = None) -> EntityState:
    return EntityState(
        entity_type="task",
        entity_id=str(uuid.uuid4()),
        finalization_status=status,
        owners={"assigned_to_id": owner.id_str if owner else None},
    )


def test_chain_always_starts_with_authentication() -> None:
    calls: list[str] = []

    def spy(ctx: GuardContext):  # type: ignore[no-untyped-def]
        calls.append("spy")
        return require_roles(MANAGERS)(ctx)

    decision = GuardChain([spy]).evaluate(GuardContext(actor=None, method="GET", path="/api/v1/companies"))

    assert not decision.allowed
    assert decision.status_code == 401
    assert decision.event_type == "UNAUTHORIZED_ACCESS"
    assert isinstance(decision.to_error(), AuthenticationError)
    assert calls == []


def test_chain_short_circuits_on_first_denial() -> None:
    calls: list[str] = []

    def never(ctx: GuardContext):  # type: ignore[no-untyped-def]
        calls.append("never")
        raise AssertionError("should not run")

    chain = GuardChain([require_permission(PermissionFlag.CAN_CREATE), never])
    decision = chain.evaluate(GuardContext(actor=_actor(Role.HEAD), method="POST", path="/api/v1/companies"))

    assert not decision.allowed
    assert decision.event_type == "PERMISSION_DENIED"
    assert decision.reason == "missing permission: canCreate"
    assert calls == []


def test_read_only_guard_blocks_mutations_for_heads() -> None:
    ctx = GuardContext(actor=_actor(Role.SUBHEAD), method="DELETE", path="/api/v1/companies/x")
    decision = read_only_guard(ctx)
    assert decision.event_type == "READ_ONLY_VIOLATION"

    ctx = GuardContext(actor=_actor(Role.SUBHEAD), method="GET", path="/api/v1/companies")
    assert read_only_guard(ctx).allowed


def test_finalized_guard_only_blocks_mutations_without_override() -> None:
    entity = _task(status="Finalized")

    converter = GuardContext(actor=_actor(Role.CONVERTER), method="PUT", path="/x", entity=entity)
    decision = finalized_entity_guard(converter)
    assert not decision.allowed
    assert decision.severity == "high"
    assert isinstance(decision.to_error(), FinalizedEntityError)

    reader = GuardContext(actor=_actor(Role.CONVERTER), method="GET", path="/x", entity=entity)
    assert finalized_entity_guard(reader).allowed

    manager = GuardContext(actor=_actor(Role.MANAGER), method="PUT", path="/x", entity=entity)
    assert finalized_entity_guard(manager).allowed

    pending = GuardContext(actor=_actor(Role.CONVERTER), method="PUT", path="/x", entity=_task(status="Pending"))
    assert finalized_entity_guard(pending).allowed


def test_ownership_guard() -> None:
    owner = _actor(Role.DATA_COLLECTOR)
    other = _actor(Role.DATA_COLLECTOR)
    rule = OwnershipRule("task", ownership_field="assigned_to_id", alternate_fields=())
    guard = ownership_guard(rule)
    entity = _task(owner=owner)

    assert guard(GuardContext(actor=owner, method="PUT", path="/x", entity=entity)).allowed
    denied = guard(GuardContext(actor=other, method="PUT", path="/x", entity=entity))
    assert denied.event_type == "RESOURCE_OWNERSHIP_VIOLATION"
    assert denied.reason == "not the owner of this task"
    assert guard(GuardContext(actor=_actor(Role.MANAGER), method="PUT", path="/x", entity=entity)).allowed


def test_ownership_guard_without_manager_override() -> None:
    rule = OwnershipRule("task", allow_managers=False, alternate_fields=())
    decision = ownership_guard(rule)(
        GuardContext(actor=_actor(Role.ADMIN), method="PUT", path="/x", entity=_task(owner=_actor(Role.CONVERTER)))
    )
    assert not decision.allowed


def test_bulk_limit_guard() -> None:
    limits = {"value": 2}
    guard = bulk_limit_guard(lambda: limits["value"])
    actor = _actor(Role.ADMIN)

    assert guard(GuardContext(actor=actor, method="PUT", path="/x", item_count=2)).allowed
    assert guard(GuardContext(actor=actor, method="PUT", path="/x", item_count=None)).allowed

    decision = guard(GuardContext(actor=actor, method="PUT", path="/x", item_count=3))
    assert decision.status_code == 400
    error = decision.to_error()
    assert isinstance(error, BulkLimitExceededError)
    assert error.message == "too many items"
    assert error.details == {"limit": 2, "received": 3}

    limits["value"] = 5
    assert guard(GuardContext(actor=actor, method="PUT", path="/x", item_count=3)).allowed


def test_chains_compose_with_addition() -> None:
    chain = GuardChain([require_permission(PermissionFlag.CAN_EDIT)]) + [read_only_guard]
    assert len(chain.guards) == 3
    assert chain.evaluate(GuardContext(actor=_actor(Role.MANAGER), method="PUT", path="/x")).allowed
