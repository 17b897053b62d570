from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from crmcore.api.envelope import ok
from crmcore.audit.trail import audit_trail, set_audit_entity_id
from crmcore.core.database import get_db
from crmcore.crm.access import FILE_OWNERSHIP, file_state
from crmcore.crm.files import file_service
from crmcore.crm.schemas import FileEntityType, FileRead
from crmcore.security.context import Actor
from crmcore.security.dependencies import route_guard
from crmcore.security.guards import ownership_guard, require_permission
from crmcore.security.permissions import PermissionFlag

router = APIRouter(prefix="/api/v1/files", tags=["files"])

can_read = route_guard(require_permission(PermissionFlag.CAN_READ))


def _file(attachment: Any) -> dict[str, Any]:
    return FileRead.model_validate(attachment).model_dump(mode="json")


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(audit_trail("file"))])
def upload_file(
    request: Request,
    entity_type: FileEntityType = Form(...),
    entity_id: uuid.UUID = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    content = file.file.read()
    attachment = file_service.upload(
        db,
        actor,
        entity_type=entity_type,
        entity_id=entity_id,
        filename=file.filename or "file.bin",
        content_type=file.content_type or "application/octet-stream",
        content=content,
    )
    set_audit_entity_id(request, attachment.id)
    return ok(_file(attachment))


@router.get("")
def list_files(
    entity_type: FileEntityType = Query(...),
    entity_id: uuid.UUID = Query(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(can_read),
) -> dict[str, Any]:
    return ok([_file(row) for row in file_service.list_for_entity(db, entity_type, entity_id)])


@router.get("/{file_id}", response_class=Response)
def download_file(
    file_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(require_permission(PermissionFlag.CAN_READ), entity=file_state)),
) -> Response:
    attachment, content = file_service.download(db, file_id)
    return Response(
        content=content,
        media_type=attachment.content_type,
        headers={"Content-Disposition": f'attachment; filename="{attachment.filename}"'},
    )


@router.delete("/{file_id}", dependencies=[Depends(audit_trail("file"))])
def delete_file(
    file_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(route_guard(ownership_guard(FILE_OWNERSHIP), entity=file_state)),
) -> dict[str, Any]:
    file_service.delete(db, file_id)
    return ok({"id": str(file_id)})
