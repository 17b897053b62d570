from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from crmcore.api.envelope import ok
from crmcore.core.database import get_db
from crmcore.crm.search import search_service
from crmcore.security.context import Actor
from crmcore.security.dependencies import route_guard
from crmcore.security.guards import require_permission
from crmcore.security.permissions import PermissionFlag

router = APIRouter(prefix="/api/v1/search", tags=["search"])


@router.get("")
def global_search(
    q: str = Query(default="", max_length=200),
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(require_permission(PermissionFlag.CAN_READ))),
) -> dict[str, Any]:
    return ok(search_service.search(db, actor, q).model_dump(mode="json"))
