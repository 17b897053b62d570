from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from crmcore.api.envelope import PageParams, ok, page_params, paginated
from crmcore.audit.trail import audit_trail, set_audit_entity_id
from crmcore.core.database import get_db
from crmcore.crm.access import user_state
from crmcore.crm.schemas import TicketPermissionUpdate, UserCreate, UserRead, UserUpdate
from crmcore.crm.users import user_service
from crmcore.security.context import Actor
from crmcore.security.dependencies import route_guard
from crmcore.security.guards import require_permission, require_roles
from crmcore.security.permissions import USER_MANAGERS, PermissionFlag, Role

router = APIRouter(prefix="/api/v1/users", tags=["users"])

_manage_users_guards = (
    require_roles(USER_MANAGERS, name="require_user_managers"),
    require_permission(PermissionFlag.CAN_MANAGE_USERS),
)
can_manage_users = route_guard(*_manage_users_guards)
can_manage_user = route_guard(*_manage_users_guards, entity=user_state)


def _user(user: Any) -> dict[str, Any]:
    return UserRead.model_validate(user).model_dump(mode="json")


@router.get("/assignable")
def list_assignable_users(
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(require_permission(PermissionFlag.CAN_READ))),
) -> dict[str, Any]:
    return ok([_user(user) for user in user_service.list_assignable(db, actor)])


@router.get("")
def list_users(
    role: Role | None = Query(default=None),
    search: str | None = Query(default=None),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_manage_users),
) -> dict[str, Any]:
    rows, total = user_service.list_users(
        db,
        role=role.value if role else None,
        search=search,
        page=params.page,
        limit=params.limit,
    )
    return paginated([_user(row) for row in rows], total, params)


@router.get("/{user_id}")
def get_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_manage_user),
) -> dict[str, Any]:
    return ok(_user(user_service.get_user(db, user_id)))


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(audit_trail("user"))])
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_manage_users),
) -> dict[str, Any]:
    user = user_service.create_user(db, actor, dto)
    set_audit_entity_id(request, user.id)
    return ok(_user(user))


@router.put("/{user_id}", dependencies=[Depends(audit_trail("user", include_body=True))])
def update_user(
    user_id: uuid.UUID,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_manage_user),
) -> dict[str, Any]:
    return ok(_user(user_service.update_user(db, actor, user_id, dto)))


@router.patch("/{user_id}/ticket-permission", dependencies=[Depends(audit_trail("user", include_body=True))])
def set_ticket_permission(
    user_id: uuid.UUID,
    dto: TicketPermissionUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_manage_user),
) -> dict[str, Any]:
    return ok(_user(user_service.set_ticket_permission(db, actor, user_id, dto.can_raise_tickets)))


@router.delete("/{user_id}", dependencies=[Depends(audit_trail("user"))])
def delete_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(require_roles([Role.ADMIN], name="require_admin"), entity=user_state)),
) -> dict[str, Any]:
    user_service.delete_user(db, actor, user_id)
    return ok({"id": str(user_id)})
