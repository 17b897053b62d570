from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from crmcore.api.envelope import PageParams, ok, page_params, paginated
from crmcore.audit.trail import audit_trail, set_audit_action, set_audit_entity_id
from crmcore.core.database import get_db
from crmcore.crm.requests import follow_up_deletion_service, profile_change_service
from crmcore.crm.schemas import (
    DeletionRequestCreate,
    DeletionRequestRead,
    DeletionRequestReview,
    ProfileChangeCreate,
    ProfileChangeRead,
    ProfileChangeReject,
    ReviewStatus,
)
from crmcore.security.context import Actor
from crmcore.security.dependencies import route_guard
from crmcore.security.guards import read_only_guard, require_permission, require_roles
from crmcore.security.permissions import MANAGERS, READ_ONLY_WITH_COMMENTS, PermissionFlag, Role

deletion_router = APIRouter(prefix="/api/v1/follow-up-deletion-requests", tags=["follow-ups"])
profile_router = APIRouter(prefix="/api/v1/profile-changes", tags=["users"])

can_read = route_guard(require_permission(PermissionFlag.CAN_READ))
can_view_deletion_requests = route_guard(
    require_roles(MANAGERS | READ_ONLY_WITH_COMMENTS, name="require_deletion_request_viewers")
)
can_review_deletion_requests = route_guard(
    require_roles(MANAGERS, name="require_managers"),
    require_permission(PermissionFlag.CAN_DELETE),
)
require_admin = route_guard(require_roles([Role.ADMIN], name="require_admin"))


def _deletion_request(row: Any) -> dict[str, Any]:
    return DeletionRequestRead.model_validate(row).model_dump(mode="json")


def _profile_change(row: Any) -> dict[str, Any]:
    return ProfileChangeRead.model_validate(row).model_dump(mode="json")


@deletion_router.get("")
def list_deletion_requests(
    status_filter: ReviewStatus | None = Query(default=None, alias="status"),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_view_deletion_requests),
) -> dict[str, Any]:
    rows, total = follow_up_deletion_service.list_requests(
        db, status=status_filter, page=params.page, limit=params.limit
    )
    return paginated([_deletion_request(row) for row in rows], total, params)


@deletion_router.get("/my")
def list_my_deletion_requests(
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    return ok([_deletion_request(row) for row in follow_up_deletion_service.list_mine(db, actor)])


@deletion_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(audit_trail("follow_up_deletion_request", include_body=True))],
)
def create_deletion_request(
    request: Request,
    dto: DeletionRequestCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(read_only_guard)),
) -> dict[str, Any]:
    row = follow_up_deletion_service.create_request(db, actor, dto)
    set_audit_entity_id(request, row.id)
    return ok(_deletion_request(row))


@deletion_router.put(
    "/{request_id}/review",
    dependencies=[
        Depends(audit_trail("follow_up_deletion_request", action="APPROVE", sensitive=True, include_body=True))
    ],
)
def review_deletion_request(
    request: Request,
    request_id: uuid.UUID,
    dto: DeletionRequestReview,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_review_deletion_requests),
) -> dict[str, Any]:
    if dto.action == "reject":
        set_audit_action(request, "REJECT")
    return ok(_deletion_request(follow_up_deletion_service.review(db, actor, request_id, dto)))


@deletion_router.delete("/{request_id}", dependencies=[Depends(audit_trail("follow_up_deletion_request"))])
def cancel_deletion_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    follow_up_deletion_service.cancel(db, actor, request_id)
    return ok({"id": str(request_id)})


@profile_router.get("/my")
def list_my_profile_changes(
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard()),
) -> dict[str, Any]:
    return ok([_profile_change(row) for row in profile_change_service.list_mine(db, actor)])


@profile_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(audit_trail("profile_change_request", include_body=True))],
)
def request_profile_change(
    request: Request,
    dto: ProfileChangeCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard()),
) -> dict[str, Any]:
    row = profile_change_service.create_request(db, actor, dto)
    set_audit_entity_id(request, row.id)
    return ok(_profile_change(row))


@profile_router.delete("/{request_id}", dependencies=[Depends(audit_trail("profile_change_request"))])
def cancel_profile_change(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard()),
) -> dict[str, Any]:
    profile_change_service.cancel(db, actor, request_id)
    return ok({"id": str(request_id)})


@profile_router.get("")
def list_profile_changes(
    status_filter: ReviewStatus | None = Query(default=None, alias="status"),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
) -> dict[str, Any]:
    rows, total = profile_change_service.list_requests(db, status=status_filter, page=params.page, limit=params.limit)
    return paginated([_profile_change(row) for row in rows], total, params)


@profile_router.post(
    "/{request_id}/approve",
    dependencies=[Depends(audit_trail("profile_change_request", action="APPROVE", sensitive=True))],
)
def approve_profile_change(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
) -> dict[str, Any]:
    return ok(_profile_change(profile_change_service.approve(db, actor, request_id)))


@profile_router.post(
    "/{request_id}/reject",
    dependencies=[Depends(audit_trail("profile_change_request", action="REJECT", sensitive=True, include_body=True))],
)
def reject_profile_change(
    request_id: uuid.UUID,
    dto: ProfileChangeReject | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
) -> dict[str, Any]:
    reason = dto.reason if dto is not None else None
    return ok(_profile_change(profile_change_service.reject(db, actor, request_id, reason)))
