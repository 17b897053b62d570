from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from crmcore.api.envelope import PageParams, page_params, paginated
from crmcore.audit.queries import list_audit_logs, list_security_events
from crmcore.core.database import get_db
from crmcore.crm.schemas import AuditLogRead, SecurityEventRead
from crmcore.security.context import Actor
from crmcore.security.dependencies import route_guard
from crmcore.security.guards import require_roles
from crmcore.security.permissions import Role

router = APIRouter(prefix="/api/v1", tags=["audit"])

admin_only = route_guard(require_roles([Role.ADMIN], name="require_admin"))


@router.get("/audit-logs")
def get_audit_logs(
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    user_id: uuid.UUID | None = Query(default=None),
    since: datetime | None = Query(default=None),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_only),
) -> dict[str, Any]:
    rows, total = list_audit_logs(
        db,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        user_id=user_id,
        since=since,
        page=params.page,
        limit=params.limit,
    )
    return paginated([AuditLogRead.model_validate(row).model_dump(mode="json") for row in rows], total, params)


@router.get("/security-events")
def get_security_events(
    event_type: str | None = Query(default=None),
    severity: Literal["low", "medium", "high", "critical"] | None = Query(default=None),
    since: datetime | None = Query(default=None),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_only),
) -> dict[str, Any]:
    rows, total = list_security_events(
        db,
        event_type=event_type,
        severity=severity,
        since=since,
        page=params.page,
        limit=params.limit,
    )
    return paginated([SecurityEventRead.model_validate(row).model_dump(mode="json") for row in rows], total, params)
