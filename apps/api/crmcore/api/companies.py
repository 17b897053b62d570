from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from crmcore.api.envelope import PageParams, ok, page_params, paginated
from crmcore.audit.trail import audit_trail, set_audit_action, set_audit_entity_id
from crmcore.core.config import get_settings
from crmcore.core.database import get_db
from crmcore.crm.access import company_state, contact_state, follow_up_state
from crmcore.crm.approvals import approval_service
from crmcore.crm.finalization import finalization_service
from crmcore.crm.schemas import (
    BulkReviewRequest,
    CompanyCreate,
    CompanyRead,
    CompanyStatus,
    CompanyUpdate,
    CompanyVisibilityUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    ConversionStatus,
    FollowUpCreate,
    FollowUpRead,
    FollowUpUpdate,
    ImportRequest,
)
from crmcore.crm.service import company_service, contact_service, follow_up_service
from crmcore.security.context import Actor
from crmcore.security.dependencies import route_guard
from crmcore.security.guards import (
    bulk_limit_guard,
    finalized_entity_guard,
    read_only_guard,
    require_permission,
    require_roles,
)
from crmcore.security.permissions import DATA_MANAGERS, FINALIZED_DATA_EXPORTERS, FINALIZERS, MANAGERS, PermissionFlag

router = APIRouter(prefix="/api/v1/companies", tags=["companies"])
contacts_router = APIRouter(prefix="/api/v1", tags=["contacts"])
follow_ups_router = APIRouter(prefix="/api/v1", tags=["follow-ups"])

can_read = route_guard(require_permission(PermissionFlag.CAN_READ))
can_read_company = route_guard(require_permission(PermissionFlag.CAN_READ), entity=company_state)
can_finalize_company = route_guard(
    require_roles(FINALIZERS, name="require_finalizers"),
    require_permission(PermissionFlag.CAN_FINALIZE),
    entity=company_state,
)


def _company(company: Any) -> dict[str, Any]:
    return CompanyRead.model_validate(company).model_dump(mode="json")


def _list_filters(
    search: str | None = Query(default=None),
    status_filter: CompanyStatus | None = Query(default=None, alias="status"),
    conversion_status: ConversionStatus | None = Query(default=None),
) -> dict[str, Any]:
    return {"search": search, "status": status_filter, "conversion_status": conversion_status}


@router.get("")
def list_companies(
    filters: dict[str, Any] = Depends(_list_filters),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    rows, total = company_service.list_companies(db, actor, filters=filters, page=params.page, limit=params.limit)
    return paginated([_company(row) for row in rows], total, params)


@router.get("/my")
def list_my_companies(
    filters: dict[str, Any] = Depends(_list_filters),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    rows, total = company_service.list_companies(
        db, actor, filters=filters, page=params.page, limit=params.limit, mine=True
    )
    return paginated([_company(row) for row in rows], total, params)


@router.get("/finalized")
def list_finalized_companies(
    filters: dict[str, Any] = Depends(_list_filters),
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(require_permission(PermissionFlag.CAN_READ_FINALIZED))),
) -> dict[str, Any]:
    rows, total = company_service.list_companies(
        db, actor, filters=filters, page=params.page, limit=params.limit, finalized_only=True
    )
    return paginated([_company(row) for row in rows], total, params)


@router.get("/approvals")
def approval_queue(
    params: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    rows, total = approval_service.queue(db, actor, page=params.page, limit=params.limit)
    return paginated([_company(row) for row in rows], total, params)


@router.get(
    "/export",
    response_class=Response,
    dependencies=[Depends(audit_trail("company", action="EXPORT", sensitive=True))],
)
def export_finalized_companies(
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            require_roles(FINALIZED_DATA_EXPORTERS, name="require_finalized_data_exporters"),
            require_permission(PermissionFlag.CAN_EXPORT_FINALIZED),
        )
    ),
) -> Response:
    payload = company_service.export_finalized_csv(db, actor)
    return Response(
        content=payload,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="finalized_companies.csv"'},
    )


@router.get("/{company_id}")
def get_company(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read_company),
) -> dict[str, Any]:
    return ok(_company(company_service.get_company(db, actor, company_id)))


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(audit_trail("company"))])
def create_company(
    request: Request,
    dto: CompanyCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(read_only_guard)),
) -> dict[str, Any]:
    company = company_service.create_company(db, actor, dto)
    set_audit_entity_id(request, company.id)
    return ok(_company(company))


@router.post(
    "/import",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(audit_trail("company_import", action="CREATE", sensitive=True, include_body=True))],
)
def import_companies(
    dto: ImportRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            require_roles(DATA_MANAGERS, name="require_data_managers"),
            require_permission(PermissionFlag.CAN_CREATE),
            bulk_limit_guard(lambda: get_settings().import_max_items),
            items_field="companies",
        )
    ),
) -> Any:
    result = approval_service.bulk_import(db, dto.companies, actor)
    body = ok(result.model_dump(mode="json"))
    if result.errors:
        return JSONResponse(status_code=207, content=body)
    return body


@router.put(
    "/approvals/bulk",
    dependencies=[Depends(audit_trail("company_approval", action="FINALIZE", sensitive=True, include_body=True))],
)
def bulk_review(
    request: Request,
    dto: BulkReviewRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            require_roles(FINALIZERS, name="require_finalizers"),
            require_permission(PermissionFlag.CAN_FINALIZE),
            bulk_limit_guard(lambda: get_settings().bulk_max_items),
            items_field="company_ids",
        )
    ),
) -> dict[str, Any]:
    if dto.action == "approve":
        result = approval_service.bulk_approve(db, dto.company_ids, actor)
    else:
        set_audit_action(request, "REJECT")
        result = approval_service.bulk_reject(db, dto.company_ids, actor)
    return ok(result.model_dump(mode="json"))


@router.put("/{company_id}", dependencies=[Depends(audit_trail("company"))])
def update_company(
    company_id: uuid.UUID,
    dto: CompanyUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            read_only_guard,
            finalized_entity_guard,
            entity=company_state,
        )
    ),
) -> dict[str, Any]:
    return ok(_company(company_service.update_company(db, actor, company_id, dto)))


@router.put("/{company_id}/finalize", dependencies=[Depends(audit_trail("company", action="FINALIZE"))])
def finalize_company(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_finalize_company),
) -> dict[str, Any]:
    return ok(_company(finalization_service.finalize(db, company_id, actor)))


@router.put("/{company_id}/unfinalize", dependencies=[Depends(audit_trail("company", action="UNFINALIZE"))])
def unfinalize_company(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_finalize_company),
) -> dict[str, Any]:
    return ok(_company(finalization_service.unfinalize(db, company_id, actor)))


@router.patch("/{company_id}/visibility", dependencies=[Depends(audit_trail("company"))])
def set_company_visibility(
    company_id: uuid.UUID,
    dto: CompanyVisibilityUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            require_roles(MANAGERS, name="require_managers"),
            finalized_entity_guard,
            entity=company_state,
        )
    ),
) -> dict[str, Any]:
    return ok(_company(company_service.set_visibility(db, actor, company_id, dto.is_public)))


@router.delete("/{company_id}", dependencies=[Depends(audit_trail("company"))])
def delete_company(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            read_only_guard,
            finalized_entity_guard,
            entity=company_state,
        )
    ),
) -> dict[str, Any]:
    company_service.delete_company(db, actor, company_id)
    return ok({"id": str(company_id)})


@contacts_router.get("/companies/{company_id}/contacts")
def list_contacts(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read_company),
) -> dict[str, Any]:
    rows = contact_service.list_for_company(db, actor, company_id)
    return ok([ContactRead.model_validate(row).model_dump(mode="json") for row in rows])


@contacts_router.post(
    "/companies/{company_id}/contacts",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(audit_trail("contact"))],
)
def create_contact(
    request: Request,
    company_id: uuid.UUID,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            read_only_guard,
            finalized_entity_guard,
            entity=company_state,
        )
    ),
) -> dict[str, Any]:
    contact = contact_service.create_contact(db, actor, company_id, dto)
    set_audit_entity_id(request, contact.id)
    return ok(ContactRead.model_validate(contact).model_dump(mode="json"))


@contacts_router.put("/contacts/{contact_id}", dependencies=[Depends(audit_trail("contact"))])
def update_contact(
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            read_only_guard,
            finalized_entity_guard,
            entity=contact_state,
        )
    ),
) -> dict[str, Any]:
    contact = contact_service.update_contact(db, actor, contact_id, dto)
    return ok(ContactRead.model_validate(contact).model_dump(mode="json"))


@contacts_router.delete("/contacts/{contact_id}", dependencies=[Depends(audit_trail("contact"))])
def delete_contact(
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            read_only_guard,
            finalized_entity_guard,
            entity=contact_state,
        )
    ),
) -> dict[str, Any]:
    contact_service.delete_contact(db, actor, contact_id)
    return ok({"id": str(contact_id)})


@follow_ups_router.get("/companies/{company_id}/follow-ups")
def list_follow_ups(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read_company),
) -> dict[str, Any]:
    rows = follow_up_service.list_for_company(db, actor, company_id)
    return ok([FollowUpRead.model_validate(row).model_dump(mode="json") for row in rows])


@follow_ups_router.post(
    "/companies/{company_id}/follow-ups",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(audit_trail("follow_up"))],
)
def create_follow_up(
    request: Request,
    company_id: uuid.UUID,
    dto: FollowUpCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            read_only_guard,
            finalized_entity_guard,
            entity=company_state,
        )
    ),
) -> dict[str, Any]:
    follow_up = follow_up_service.create_follow_up(db, actor, company_id, dto)
    set_audit_entity_id(request, follow_up.id)
    return ok(FollowUpRead.model_validate(follow_up).model_dump(mode="json"))


@follow_ups_router.put("/follow-ups/{follow_up_id}", dependencies=[Depends(audit_trail("follow_up"))])
def update_follow_up(
    follow_up_id: uuid.UUID,
    dto: FollowUpUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            read_only_guard,
            finalized_entity_guard,
            entity=follow_up_state,
        )
    ),
) -> dict[str, Any]:
    follow_up = follow_up_service.update_follow_up(db, actor, follow_up_id, dto)
    return ok(FollowUpRead.model_validate(follow_up).model_dump(mode="json"))


@follow_ups_router.delete("/follow-ups/{follow_up_id}", dependencies=[Depends(audit_trail("follow_up"))])
def delete_follow_up(
    follow_up_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(
        route_guard(
            read_only_guard,
            finalized_entity_guard,
            entity=follow_up_state,
        )
    ),
) -> dict[str, Any]:
    follow_up_service.delete_follow_up(db, actor, follow_up_id)
    return ok({"id": str(follow_up_id)})
