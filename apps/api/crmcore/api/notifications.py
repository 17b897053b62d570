from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from crmcore.api.envelope import PageParams, ok, page_params, paginated
from crmcore.core.database import get_db
from crmcore.notifications import notification_service
from crmcore.security.context import Actor
from crmcore.security.dependencies import route_guard

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])

signed_in = route_guard()


@router.get("")
def list_notifications(
    unread: bool = Query(default=False),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(signed_in),
) -> dict[str, Any]:
    items, total = notification_service.list_for_user(
        db, actor, unread_only=unread, page=params.page, limit=params.limit
    )
    return paginated([item.model_dump(mode="json") for item in items], total, params)


@router.put("/read-all")
def mark_all_notifications_read(db: Session = Depends(get_db), actor: Actor = Depends(signed_in)) -> dict[str, Any]:
    return ok({"updated": notification_service.mark_all_read(db, actor)})


@router.put("/{notification_id}/read")
def mark_notification_read(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(signed_in),
) -> dict[str, Any]:
    return ok(notification_service.mark_read(db, actor, notification_id).model_dump(mode="json"))
