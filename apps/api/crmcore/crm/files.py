from __future__ import annotations

import logging
import uuid
from pathlib import Path

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from crmcore import files_store
from crmcore.core.config import get_settings
from crmcore.crm.models import Company, FileAttachment, Task, Ticket, User
from crmcore.security.context import Actor
from crmcore.security.errors import NotFoundError, ValidationError


logger = logging.getLogger("app.crm")

_TARGETS = {"company": Company, "task": Task, "ticket": Ticket, "user": User}


class FileService:
    entity_type = "file"

    def upload(
        self,
        session: Session,
        actor: Actor,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
        filename: str,
        content_type: str,
        content: bytes,
    ) -> FileAttachment:
        target = _TARGETS.get(entity_type)
        if target is None:
            raise ValidationError.for_field("entity_type", f"unsupported entity type: {entity_type}")
        if session.get(target, entity_id) is None:
            raise NotFoundError(f"{entity_type} not found")
        if not content:
            raise ValidationError.for_field("file", "file is empty", "empty")
        limit = get_settings().max_upload_bytes
        if len(content) > limit:
            raise ValidationError.for_field("file", f"file exceeds {limit} bytes", "too_large")

        storage_id = files_store.put(content)
        attachment = FileAttachment(
            entity_type=entity_type,
            entity_id=entity_id,
            filename=Path(filename).name or "file.bin",
            content_type=content_type or "application/octet-stream",
            size_bytes=len(content),
            storage_id=storage_id,
            uploaded_by_id=actor.user_id,
        )
        session.add(attachment)
        try:
            session.commit()
        except Exception:
            session.rollback()
            files_store.delete(storage_id)
            raise
        session.refresh(attachment)
        return attachment

    def list_for_entity(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> list[FileAttachment]:
        rows = session.scalars(
            select(FileAttachment)
            .where(and_(FileAttachment.entity_type == entity_type, FileAttachment.entity_id == entity_id))
            .order_by(FileAttachment.created_at.desc())
        ).all()
        return list(rows)

    def download(self, session: Session, file_id: uuid.UUID) -> tuple[FileAttachment, bytes]:
        attachment = self._get(session, file_id)
        try:
            content = files_store.get(attachment.storage_id)
        except FileNotFoundError as exc:
            raise NotFoundError("file content missing") from exc
        return attachment, content

    def delete(self, session: Session, file_id: uuid.UUID) -> None:
        attachment = self._get(session, file_id)
        storage_id = attachment.storage_id
        session.delete(attachment)
        session.commit()
        files_store.delete(storage_id)
        logger.info("file.deleted", extra={"entity_type": self.entity_type, "entity_id": str(file_id)})

    def _get(self, session: Session, file_id: uuid.UUID) -> FileAttachment:
        attachment = session.get(FileAttachment, file_id)
        if attachment is None:
            raise NotFoundError("file not found")
        return attachment


file_service = FileService()
