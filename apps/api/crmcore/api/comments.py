from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from crmcore.api.envelope import ok
from crmcore.audit.trail import audit_trail, set_audit_entity_id
from crmcore.core.database import get_db
from crmcore.crm.access import COMMENT_OWNERSHIP, comment_state
from crmcore.crm.schemas import CommentCreate, CommentEntityType, CommentRead, CommentUpdate
from crmcore.crm.service import comment_service
from crmcore.security.context import Actor
from crmcore.security.dependencies import route_guard
from crmcore.security.guards import ownership_guard, require_permission
from crmcore.security.permissions import PermissionFlag

router = APIRouter(prefix="/api/v1/comments", tags=["comments"])

can_edit_comment = route_guard(
    require_permission(PermissionFlag.CAN_COMMENT),
    ownership_guard(COMMENT_OWNERSHIP),
    entity=comment_state,
)


def _comment(comment: Any) -> dict[str, Any]:
    return CommentRead.model_validate(comment).model_dump(mode="json")


@router.get("")
def list_comments(
    entity_type: CommentEntityType = Query(...),
    entity_id: uuid.UUID = Query(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(require_permission(PermissionFlag.CAN_READ))),
) -> dict[str, Any]:
    return ok([_comment(row) for row in comment_service.list_comments(db, entity_type, entity_id)])


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(audit_trail("comment"))])
def create_comment(
    request: Request,
    dto: CommentCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(require_permission(PermissionFlag.CAN_COMMENT))),
) -> dict[str, Any]:
    comment = comment_service.create_comment(db, actor, dto)
    set_audit_entity_id(request, comment.id)
    return ok(_comment(comment))


@router.put("/{comment_id}", dependencies=[Depends(audit_trail("comment"))])
def update_comment(
    comment_id: uuid.UUID,
    dto: CommentUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_edit_comment),
) -> dict[str, Any]:
    return ok(_comment(comment_service.update_comment(db, actor, comment_id, dto)))


@router.delete("/{comment_id}", dependencies=[Depends(audit_trail("comment"))])
def delete_comment(
    comment_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_edit_comment),
) -> dict[str, Any]:
    comment_service.delete_comment(db, actor, comment_id)
    return ok({"id": str(comment_id)})
