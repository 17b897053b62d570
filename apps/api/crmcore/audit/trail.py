from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request

from crmcore.audit.logger import PendingSecurityEvent


@dataclass(slots=True)
class AuditTrail:
    """Per-request audit settings, picked up by ``AuditTrailMiddleware`` once the response is sent."""

    entity_type: str
    action: str | None = None
    sensitive: bool = False
    include_body: bool = False
    log_failures: bool = True
    entity_id: str | None = None


def audit_trail(
    entity_type: str,
    *,
    action: str | None = None,
    sensitive: bool = False,
    include_body: bool = False,
    log_failures: bool = True,
) -> Callable[[Request], None]:
    """Route dependency marking the request as audited.

    List it in the route's ``dependencies`` so it runs before the guard chain;
    denied requests are then recorded as failed attempts too.
    """

    def dependency(request: Request) -> None:
        request.state.audit_trail = AuditTrail(
            entity_type=entity_type,
            action=action,
            sensitive=sensitive,
            include_body=include_body,
            log_failures=log_failures,
        )

    return dependency


def set_audit_entity_id(request: Request, entity_id: object) -> None:
    trail = getattr(request.state, "audit_trail", None)
    if isinstance(trail, AuditTrail):
        trail.entity_id = str(entity_id)


def set_audit_action(request: Request, action: str) -> None:
    trail = getattr(request.state, "audit_trail", None)
    if isinstance(trail, AuditTrail):
        trail.action = action


def queue_security_event(request: Request, event: PendingSecurityEvent) -> None:
    events = getattr(request.state, "security_events", None)
    if events is None:
        events = []
        request.state.security_events = events
    events.append(event)
