from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from crmcore.audit.models import AuditLog, SecurityEvent


def _page(session: Session, stmt: Select[Any], page: int, limit: int) -> tuple[list[Any], int]:
    total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = session.scalars(stmt.offset((page - 1) * limit).limit(limit)).all()
    return list(rows), total


def list_audit_logs(
    session: Session,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    user_id: Any = None,
    since: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[AuditLog], int]:
    stmt = select(AuditLog)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    if action:
        stmt = stmt.where(AuditLog.action == action.upper())
    if user_id is not None:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if since is not None:
        stmt = stmt.where(AuditLog.created_at >= since)
    return _page(session, stmt.order_by(AuditLog.created_at.desc(), AuditLog.id), page, limit)


def list_security_events(
    session: Session,
    *,
    event_type: str | None = None,
    severity: str | None = None,
    since: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[SecurityEvent], int]:
    stmt = select(SecurityEvent)
    if event_type:
        stmt = stmt.where(SecurityEvent.event_type == event_type)
    if severity:
        stmt = stmt.where(SecurityEvent.severity == severity)
    if since is not None:
        stmt = stmt.where(SecurityEvent.created_at >= since)
    return _page(session, stmt.order_by(SecurityEvent.created_at.desc(), SecurityEvent.id), page, limit)
