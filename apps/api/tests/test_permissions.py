from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

import pytest

from crmcore.security.hierarchy import assignable_roles, assignable_users, can_assign
from crmcore.security.permissions import (
    DATA_MANAGERS,
    FINALIZERS,
    MANAGERS,
    READ_ONLY_WITH_COMMENTS,
    PermissionFlag,
    Role,
    get_permissions,
    has_permission,
    is_in_role_group,
    permission_table,
)


@dataclass
class _User:
    name: str
    role: str


def test_admin_has_every_permission() -> None:
    permissions = get_permissions(Role.ADMIN)
    assert all(permissions.allows(flag) for flag in PermissionFlag)


@pytest.mark.parametrize("role", ["Intern", "", None, "admin"])
def test_unknown_role_has_no_permissions(role: str | None) -> None:
    permissions = get_permissions(role)
    assert not any(permissions.allows(flag) for flag in PermissionFlag)


def test_read_only_roles_cannot_mutate_but_can_comment() -> None:
    for role in (Role.HEAD, Role.SUBHEAD):
        assert has_permission(role, PermissionFlag.CAN_READ)
        assert has_permission(role, PermissionFlag.CAN_COMMENT)
        assert not has_permission(role, PermissionFlag.CAN_CREATE)
        assert not has_permission(role, PermissionFlag.CAN_EDIT)
        assert not has_permission(role, PermissionFlag.CAN_DELETE)


def test_data_collector_and_converter_flags() -> None:
    assert has_permission(Role.DATA_COLLECTOR, PermissionFlag.CAN_CREATE)
    assert not has_permission(Role.DATA_COLLECTOR, PermissionFlag.CAN_READ_FINALIZED)
    assert not has_permission(Role.DATA_COLLECTOR, PermissionFlag.CAN_COMMENT)
    assert has_permission(Role.CONVERTER, PermissionFlag.CAN_FINALIZE)
    assert not has_permission(Role.CONVERTER, PermissionFlag.CAN_CREATE)
    assert not has_permission(Role.CONVERTER, PermissionFlag.CAN_EDIT_FINALIZED)


def test_unknown_flag_is_denied() -> None:
    assert not has_permission(Role.ADMIN, "canLaunchRockets")


def test_role_groups() -> None:
    assert MANAGERS == frozenset({Role.ADMIN, Role.MANAGER})
    assert DATA_MANAGERS == frozenset({Role.ADMIN, Role.MANAGER, Role.DATA_COLLECTOR})
    assert READ_ONLY_WITH_COMMENTS == frozenset({Role.HEAD, Role.SUBHEAD})
    assert is_in_role_group("Manager", FINALIZERS)
    assert not is_in_role_group("Converter", FINALIZERS)
    assert not is_in_role_group("Nobody", FINALIZERS)


def test_permission_table_matches_shared_document() -> None:
    document_path = Path(__file__).resolve().parents[1] / "crmcore" / "security" / "role_permissions.json"
    document = json.loads(document_path.read_text(encoding="utf-8"))

    table = permission_table()
    assert table["flags"] == document["flags"]
    for role_name, flags in document["roles"].items():
        assert table["roles"][role_name] == flags


def test_permission_set_is_immutable() -> None:
    permissions = get_permissions(Role.MANAGER)
    with pytest.raises(AttributeError):
        permissions.granted = frozenset()  # type: ignore[misc]


def test_assignment_hierarchy() -> None:
    assert assignable_roles(Role.MANAGER) == frozenset({Role.CONVERTER, Role.DATA_COLLECTOR})
    assert assignable_roles(Role.DATA_COLLECTOR) == frozenset()
    assert assignable_roles("Unknown") == frozenset()

    assert can_assign(Role.ADMIN, Role.SUBHEAD)
    assert can_assign(Role.HEAD, Role.MANAGER)
    assert can_assign(Role.CONVERTER, Role.DATA_COLLECTOR)
    assert not can_assign(Role.MANAGER, Role.HEAD)
    assert not can_assign(Role.MANAGER, Role.MANAGER)
    assert not can_assign(Role.DATA_COLLECTOR, Role.DATA_COLLECTOR)
    assert not can_assign(Role.ADMIN, "Nobody")


def test_assignable_users_filters_by_actor_role() -> None:
    users = [
        _User("head", "Head"),
        _User("manager", "Manager"),
        _User("converter", "Converter"),
        _User("collector", "DataCollector"),
        _User("ghost", "Ghost"),
    ]

    assert [user.name for user in assignable_users(users, Role.MANAGER)] == ["converter", "collector"]
    assert [user.name for user in assignable_users(users, Role.SUBHEAD)] == ["manager", "converter", "collector"]
    assert assignable_users(users, Role.DATA_COLLECTOR) == []
