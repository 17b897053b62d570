from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from crmcore.api.envelope import PageParams, ok, page_params, paginated
from crmcore.audit.trail import audit_trail, set_audit_entity_id
from crmcore.core.database import get_db
from crmcore.crm.access import TASK_OWNERSHIP, TICKET_OWNERSHIP, task_state, ticket_state
from crmcore.crm.schemas import (
    OpenCount,
    TaskCreate,
    TaskRead,
    TaskStatus,
    TaskUpdate,
    TicketCreate,
    TicketRead,
    TicketUpdate,
)
from crmcore.crm.service import task_service, ticket_service
from crmcore.security.context import Actor
from crmcore.security.dependencies import route_guard
from crmcore.security.guards import (
    ownership_guard,
    require_any_permission,
    require_permission,
    require_roles,
)
from crmcore.security.permissions import MANAGERS, TASK_ASSIGNERS, PermissionFlag

router = APIRouter(prefix="/api/v1/tasks", tags=["tasks"])
tickets_router = APIRouter(prefix="/api/v1/tickets", tags=["tickets"])

can_read = route_guard(require_permission(PermissionFlag.CAN_READ))
can_update_task = route_guard(
    require_any_permission(PermissionFlag.CAN_UPDATE_ALL_TASKS, PermissionFlag.CAN_UPDATE_OWN_TASKS),
    ownership_guard(TASK_OWNERSHIP),
    entity=task_state,
)
can_update_ticket = route_guard(
    require_any_permission(PermissionFlag.CAN_UPDATE_ALL_TASKS, PermissionFlag.CAN_UPDATE_OWN_TASKS),
    ownership_guard(TICKET_OWNERSHIP),
    entity=ticket_state,
)


def _task(task: Any) -> dict[str, Any]:
    return TaskRead.model_validate(task).model_dump(mode="json")


def _ticket(ticket: Any) -> dict[str, Any]:
    return TicketRead.model_validate(ticket).model_dump(mode="json")


@router.get("")
def list_tasks(
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    rows, total = task_service.list_tasks(db, actor, status=status_filter, page=params.page, limit=params.limit)
    return paginated([_task(row) for row in rows], total, params)


@router.get("/my")
def list_my_tasks(
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    rows, total = task_service.list_tasks(
        db, actor, status=status_filter, page=params.page, limit=params.limit, mine=True
    )
    return paginated([_task(row) for row in rows], total, params)


@router.get("/my/count")
def count_my_open_tasks(db: Session = Depends(get_db), actor: Actor = Depends(can_read)) -> dict[str, Any]:
    return ok(OpenCount(count=task_service.count_open(db, actor)).model_dump())


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(audit_trail("task"))])
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(require_permission(PermissionFlag.CAN_ASSIGN_TASKS))),
) -> dict[str, Any]:
    task = task_service.create_task(db, actor, dto)
    set_audit_entity_id(request, task.id)
    return ok(_task(task))


@router.put("/{task_id}", dependencies=[Depends(audit_trail("task"))])
def update_task(
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_update_task),
) -> dict[str, Any]:
    return ok(_task(task_service.update_task(db, actor, task_id, dto)))


@router.delete("/{task_id}", dependencies=[Depends(audit_trail("task"))])
def delete_task(
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(require_roles(TASK_ASSIGNERS, name="require_task_assigners"), entity=task_state)),
) -> dict[str, Any]:
    task_service.delete_task(db, actor, task_id)
    return ok({"id": str(task_id)})


@tickets_router.get("")
def list_tickets(
    resolved: bool | None = Query(default=None),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    rows, total = ticket_service.list_tickets(db, actor, resolved=resolved, page=params.page, limit=params.limit)
    return paginated([_ticket(row) for row in rows], total, params)


@tickets_router.get("/my")
def list_my_tickets(
    resolved: bool | None = Query(default=None),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    rows, total = ticket_service.list_tickets(
        db, actor, resolved=resolved, page=params.page, limit=params.limit, mine=True
    )
    return paginated([_ticket(row) for row in rows], total, params)


@tickets_router.get("/my/count")
def count_my_open_tickets(db: Session = Depends(get_db), actor: Actor = Depends(can_read)) -> dict[str, Any]:
    return ok(OpenCount(count=ticket_service.count_open(db, actor)).model_dump())


@tickets_router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(audit_trail("ticket"))])
def create_ticket(
    request: Request,
    dto: TicketCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    ticket = ticket_service.create_ticket(db, actor, dto)
    set_audit_entity_id(request, ticket.id)
    return ok(_ticket(ticket))


@tickets_router.put("/{ticket_id}", dependencies=[Depends(audit_trail("ticket"))])
def update_ticket(
    ticket_id: uuid.UUID,
    dto: TicketUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_update_ticket),
) -> dict[str, Any]:
    return ok(_ticket(ticket_service.update_ticket(db, actor, ticket_id, dto)))


@tickets_router.delete("/{ticket_id}", dependencies=[Depends(audit_trail("ticket"))])
def delete_ticket(
    ticket_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(require_roles(MANAGERS, name="require_managers"), entity=ticket_state)),
) -> dict[str, Any]:
    ticket_service.delete_ticket(db, actor, ticket_id)
    return ok({"id": str(ticket_id)})
