"""Role permission table.

The table, role groups and assignment hierarchy live in ``role_permissions.json``
next to this module. The API serves the same document at ``/api/v1/permissions``
so clients never keep a second copy.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

_TABLE_PATH = Path(__file__).with_name("role_permissions.json")


class Role(StrEnum):
    ADMIN = "Admin"
    HEAD = "Head"
    SUBHEAD = "SubHead"
    MANAGER = "Manager"
    CONVERTER = "Converter"
    DATA_COLLECTOR = "DataCollector"


class PermissionFlag(StrEnum):
    CAN_READ = "canRead"
    CAN_READ_FINALIZED = "canReadFinalized"
    CAN_CREATE = "canCreate"
    CAN_EDIT = "canEdit"
    CAN_DELETE = "canDelete"
    CAN_BULK_DELETE = "canBulkDelete"
    CAN_ASSIGN_TASKS = "canAssignTasks"
    CAN_UPDATE_OWN_TASKS = "canUpdateOwnTasks"
    CAN_UPDATE_ALL_TASKS = "canUpdateAllTasks"
    CAN_FINALIZE = "canFinalize"
    CAN_EDIT_FINALIZED = "canEditFinalized"
    CAN_MANAGE_USERS = "canManageUsers"
    CAN_COMMENT = "canComment"
    CAN_MANAGE_CUSTOM_FIELDS = "canManageCustomFields"
    CAN_EXPORT_FINALIZED = "canExportFinalized"


@dataclass(frozen=True, slots=True)
class PermissionSet:
    granted: frozenset[PermissionFlag] = frozenset()

    def allows(self, flag: PermissionFlag | str) -> bool:
        try:
            return PermissionFlag(flag) in self.granted
        except ValueError:
            return False

    def as_dict(self) -> dict[str, bool]:
        return {flag.value: flag in self.granted for flag in PermissionFlag}


NO_PERMISSIONS = PermissionSet()


@lru_cache
def _load_document() -> Mapping[str, Any]:
    with _TABLE_PATH.open(encoding="utf-8") as handle:
        document = json.load(handle)

    declared = set(document["flags"])
    known = {flag.value for flag in PermissionFlag}
    if declared != known:
        raise RuntimeError(f"role_permissions.json flags out of sync: {sorted(declared ^ known)}")
    for role in Role:
        if role.value not in document["roles"]:
            raise RuntimeError(f"role_permissions.json has no entry for role {role.value}")
    return MappingProxyType(document)


def _build_table() -> Mapping[Role, PermissionSet]:
    document = _load_document()
    table: dict[Role, PermissionSet] = {}
    for role in Role:
        flags = document["roles"][role.value]
        table[role] = PermissionSet(frozenset(PermissionFlag(name) for name, value in flags.items() if value))
    return MappingProxyType(table)


def _build_groups() -> Mapping[str, frozenset[Role]]:
    groups = _load_document()["groups"]
    return MappingProxyType({name: frozenset(Role(member) for member in members) for name, members in groups.items()})


ROLE_PERMISSIONS = _build_table()
ROLE_GROUPS = _build_groups()

MANAGERS = ROLE_GROUPS["MANAGERS"]
DATA_MANAGERS = ROLE_GROUPS["DATA_MANAGERS"]
READ_ONLY_WITH_COMMENTS = ROLE_GROUPS["READ_ONLY_WITH_COMMENTS"]
TASK_ASSIGNERS = ROLE_GROUPS["TASK_ASSIGNERS"]
FINALIZERS = ROLE_GROUPS["FINALIZERS"]
USER_MANAGERS = ROLE_GROUPS["USER_MANAGERS"]
FINALIZED_DATA_EXPORTERS = ROLE_GROUPS["FINALIZED_DATA_EXPORTERS"]


def parse_role(value: Any) -> Role | None:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value))
    except ValueError:
        return None


def get_permissions(role: Role | str | None) -> PermissionSet:
    """Return the permission set for ``role``; unknown roles get no permissions."""
    parsed = parse_role(role)
    if parsed is None:
        return NO_PERMISSIONS
    return ROLE_PERMISSIONS[parsed]


def has_permission(role: Role | str | None, flag: PermissionFlag | str) -> bool:
    return get_permissions(role).allows(flag)


def is_in_role_group(role: Role | str | None, group: frozenset[Role]) -> bool:
    parsed = parse_role(role)
    return parsed is not None and parsed in group


def permission_table() -> dict[str, Any]:
    document = _load_document()
    return {
        "flags": list(document["flags"]),
        "roles": {role.value: ROLE_PERMISSIONS[role].as_dict() for role in Role},
        "groups": {name: sorted(member.value for member in members) for name, members in ROLE_GROUPS.items()},
        "assignable": {name: list(targets) for name, targets in document["assignable"].items()},
    }


def assignment_document() -> Mapping[str, list[str]]:
    return _load_document()["assignable"]
