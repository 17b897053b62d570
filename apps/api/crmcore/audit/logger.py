from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Generator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from sqlalchemy import Connection, Engine
from sqlalchemy.orm import Session

from crmcore.audit.models import AuditLog, SecurityEvent
from crmcore.core.database import SessionLocal
from crmcore.metrics import observe_audit_entry, observe_audit_write_failure, observe_security_event
from crmcore.security.context import Actor


logger = logging.getLogger("app.audit")
security_logger = logging.getLogger("app.security")

SessionScope = Callable[[], AbstractContextManager[Session]]

_METHOD_ACTIONS = {
    "POST": "CREATE",
    "PUT": "UPDATE",
    "PATCH": "UPDATE",
    "DELETE": "DELETE",
    "GET": "READ",
}
SENSITIVE_ACTIONS = frozenset({"DELETE", "FINALIZE"})
SENSITIVE_ENTITY_TYPES = frozenset({"user", "company", "audit_log"})


def action_for_method(method: str) -> str:
    return _METHOD_ACTIONS.get(method.upper(), method.upper())


def classify_severity(action: str, entity_type: str) -> str:
    action = action.upper()
    entity_type = entity_type.lower()
    if action == "DELETE" and entity_type == "user":
        return "critical"
    if action == "DELETE":
        return "medium"
    if action == "FINALIZE":
        return "medium"
    if action == "CREATE" and entity_type == "user":
        return "medium"
    return "low"


def is_sensitive(action: str, entity_type: str) -> bool:
    return action.upper() in SENSITIVE_ACTIONS or entity_type.lower() in SENSITIVE_ENTITY_TYPES


def security_event_type(action: str, entity_type: str) -> str:
    return f"AUDIT_{action.upper()}_{entity_type.upper()}"


@dataclass(slots=True)
class AuditContext:
    method: str
    url: str
    status_code: int
    success: bool
    duration_ms: float
    ip_address: str | None = None
    user_agent: str | None = None
    body: Any = None
    sensitive: bool = False
    correlation_id: str | None = None

    def changes(self, actor: Actor | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "method": self.method,
            "url": self.url,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "status_code": self.status_code,
            "user_role": actor.role.value if actor else None,
        }
        if self.body is not None:
            payload["body"] = self.body
        return payload


@dataclass(slots=True)
class PendingSecurityEvent:
    """Security event raised while handling a request, written once the response is out."""

    event_type: str
    severity: str
    details: dict[str, Any] = field(default_factory=dict)
    user_id: uuid.UUID | None = None


@contextmanager
def default_session_scope() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def bound_session_scope(bind: Engine | Connection) -> SessionScope:
    """Session scope over an explicit engine, independent of any request session."""

    @contextmanager
    def scope() -> Generator[Session, None, None]:
        with Session(bind=bind) as session:
            yield session

    return scope


class AuditLogger:
    """Writes audit entries and security events without ever raising to the caller."""

    def __init__(self, session_scope: SessionScope = default_session_scope) -> None:
        self._session_scope = session_scope

    def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str | None,
        actor: Actor | None,
        context: AuditContext,
    ) -> None:
        action = action.upper()
        sensitive = context.sensitive or is_sensitive(action, entity_type)
        severity = classify_severity(action, entity_type)
        try:
            with self._session_scope() as session:
                try:
                    session.add(
                        AuditLog(
                            user_id=actor.user_id if actor else None,
                            action=action,
                            entity_type=entity_type,
                            entity_id=entity_id,
                            changes=context.changes(actor),
                            ip_address=context.ip_address,
                            correlation_id=context.correlation_id,
                        )
                    )
                    if sensitive:
                        session.add(
                            SecurityEvent(
                                event_type=security_event_type(action, entity_type),
                                user_id=actor.user_id if actor else None,
                                ip_address=context.ip_address,
                                user_agent=context.user_agent,
                                details={
                                    "action": action,
                                    "entity_type": entity_type,
                                    "entity_id": entity_id,
                                    "duration_ms": context.duration_ms,
                                    "success": context.success,
                                    "status_code": context.status_code,
                                    "user_role": actor.role.value if actor else None,
                                    "timestamp": datetime.now(timezone.utc).isoformat(),
                                },
                                severity=severity,
                                correlation_id=context.correlation_id,
                            )
                        )
                    session.commit()
                except Exception:
                    session.rollback()
                    raise
        except Exception as exc:
            observe_audit_write_failure("audit")
            logger.error(
                "audit.write_failed",
                exc_info=True,
                extra={
                    "action": action,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "error": str(exc),
                },
            )
            return

        observe_audit_entry(action)
        if sensitive:
            observe_security_event(severity)
        logger.info(
            "audit.recorded",
            extra={
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "status_code": context.status_code,
                "duration_ms": context.duration_ms,
            },
        )

    def record_security_event(
        self,
        event: PendingSecurityEvent,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        try:
            with self._session_scope() as session:
                try:
                    session.add(
                        SecurityEvent(
                            event_type=event.event_type,
                            user_id=event.user_id,
                            ip_address=ip_address,
                            user_agent=user_agent,
                            details=event.details,
                            severity=event.severity,
                            correlation_id=correlation_id,
                        )
                    )
                    session.commit()
                except Exception:
                    session.rollback()
                    raise
        except Exception as exc:
            observe_audit_write_failure("security_event")
            security_logger.error(
                "security_event.write_failed",
                exc_info=True,
                extra={"event_type": event.event_type, "error": str(exc)},
            )
            return

        observe_security_event(event.severity)
        security_logger.warning(
            "security_event.recorded",
            extra={"event_type": event.event_type, "severity": event.severity},
        )


_audit_logger: AuditLogger = AuditLogger()
_audit_logger_lock = Lock()


def get_audit_logger() -> AuditLogger:
    with _audit_logger_lock:
        return _audit_logger


def set_audit_logger(audit_logger: AuditLogger) -> None:
    global _audit_logger
    with _audit_logger_lock:
        _audit_logger = audit_logger
