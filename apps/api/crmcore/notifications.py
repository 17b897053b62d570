from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from crmcore.core.celery_app import enqueue_email
from crmcore.crm.models import Notification, User
from crmcore.crm.schemas import NotificationRead
from crmcore.security.context import Actor
from crmcore.security.errors import NotFoundError


logger = logging.getLogger("app.notifications")


class NotificationService:
    def notify(
        self,
        session: Session,
        user_id: uuid.UUID | None,
        message: str,
        *,
        type: str = "info",
        entity_type: str | None = None,
        entity_id: uuid.UUID | None = None,
        email_subject: str | None = None,
    ) -> None:
        """Store an in-app notification and optionally mail it; failures are logged only."""
        if user_id is None:
            return
        try:
            session.add(
                Notification(
                    user_id=user_id,
                    message=message,
                    type=type,
                    entity_type=entity_type,
                    entity_id=entity_id,
                )
            )
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.warning(
                "notification.failed",
                extra={"entity_type": entity_type, "entity_id": str(entity_id) if entity_id else None, "error": str(exc)},
            )
            return

        if email_subject:
            recipient = session.get(User, user_id)
            if recipient is not None:
                enqueue_email(recipient.email, email_subject, message)

    def list_for_user(
        self,
        session: Session,
        actor: Actor,
        *,
        unread_only: bool,
        page: int,
        limit: int,
    ) -> tuple[list[NotificationRead], int]:
        conditions: list[Any] = [Notification.user_id == actor.user_id]
        if unread_only:
            conditions.append(Notification.is_read.is_(False))
        total = session.scalar(select(func.count()).select_from(Notification).where(and_(*conditions))) or 0
        rows = session.scalars(
            select(Notification)
            .where(and_(*conditions))
            .order_by(Notification.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return [NotificationRead.model_validate(row) for row in rows], total

    def mark_read(self, session: Session, actor: Actor, notification_id: uuid.UUID) -> NotificationRead:
        notification = session.get(Notification, notification_id)
        if notification is None or notification.user_id != actor.user_id:
            raise NotFoundError("notification not found")
        notification.is_read = True
        session.commit()
        session.refresh(notification)
        return NotificationRead.model_validate(notification)

    def mark_all_read(self, session: Session, actor: Actor) -> int:
        result = session.execute(
            update(Notification)
            .where(and_(Notification.user_id == actor.user_id, Notification.is_read.is_(False)))
            .values(is_read=True)
        )
        session.commit()
        return result.rowcount or 0


notification_service = NotificationService()
