from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from crmcore.api.envelope import ok
from crmcore.audit.trail import audit_trail
from crmcore.core.database import get_db
from crmcore.crm.analytics import analytics_service
from crmcore.crm.exports import export_companies_csv, export_tasks_csv, export_tickets_csv
from crmcore.security.context import Actor
from crmcore.security.dependencies import route_guard
from crmcore.security.guards import require_permission, require_roles
from crmcore.security.permissions import MANAGERS, PermissionFlag

router = APIRouter(prefix="/api/v1/analytics", tags=["analytics"])
export_router = APIRouter(prefix="/api/v1/export", tags=["export"])

require_managers = route_guard(require_roles(MANAGERS, name="require_managers"))


def _csv(payload: str, filename: str) -> Response:
    return Response(
        content=payload,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/dashboard")
def dashboard(db: Session = Depends(get_db), actor: Actor = Depends(require_managers)) -> dict[str, Any]:
    return ok(analytics_service.dashboard(db).model_dump(mode="json"))


@router.get("/companies")
def company_stats(db: Session = Depends(get_db), actor: Actor = Depends(require_managers)) -> dict[str, Any]:
    return ok(analytics_service.company_stats(db).model_dump(mode="json"))


@router.get("/tasks")
def task_stats(db: Session = Depends(get_db), actor: Actor = Depends(require_managers)) -> dict[str, Any]:
    return ok(analytics_service.task_stats(db).model_dump(mode="json"))


@router.get("/tickets")
def ticket_stats(db: Session = Depends(get_db), actor: Actor = Depends(require_managers)) -> dict[str, Any]:
    return ok(analytics_service.ticket_stats(db).model_dump(mode="json"))


@router.get("/activity")
def activity(
    days: int = Query(default=30, ge=1, le=365),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_managers),
) -> dict[str, Any]:
    return ok([point.model_dump(mode="json") for point in analytics_service.activity(db, days)])


@export_router.get(
    "/companies",
    response_class=Response,
    dependencies=[Depends(audit_trail("company", action="EXPORT", sensitive=True))],
)
def export_companies(
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            require_roles(MANAGERS, name="require_managers"),
            require_permission(PermissionFlag.CAN_EXPORT_FINALIZED),
        )
    ),
) -> Response:
    return _csv(export_companies_csv(db), "companies.csv")


@export_router.get(
    "/tasks",
    response_class=Response,
    dependencies=[Depends(audit_trail("task", action="EXPORT", sensitive=True))],
)
def export_tasks(db: Session = Depends(get_db), actor: Actor = Depends(require_managers)) -> Response:
    return _csv(export_tasks_csv(db), "tasks.csv")


@export_router.get(
    "/tickets",
    response_class=Response,
    dependencies=[Depends(audit_trail("ticket", action="EXPORT", sensitive=True))],
)
def export_tickets(db: Session = Depends(get_db), actor: Actor = Depends(require_managers)) -> Response:
    return _csv(export_tickets_csv(db), "tickets.csv")
