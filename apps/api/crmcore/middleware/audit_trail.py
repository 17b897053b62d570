from __future__ import annotations

import json
import logging
import time
from typing import Any

from starlette.concurrency import run_in_threadpool
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from crmcore.audit.logger import AuditContext, PendingSecurityEvent, action_for_method, get_audit_logger
from crmcore.audit.trail import AuditTrail
from crmcore.context import get_correlation_id
from crmcore.security.context import Actor


logger = logging.getLogger("app.audit")

_MAX_CAPTURE_BYTES = 64 * 1024


class AuditTrailMiddleware:
    """Writes audit entries and queued security events after the response has gone out."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        request_body = bytearray()
        response_body = bytearray()
        response_status = {"code": 500}

        async def capture_receive() -> Message:
            message = await receive()
            if message["type"] == "http.request" and len(request_body) < _MAX_CAPTURE_BYTES:
                request_body.extend(message.get("body", b""))
            return message

        async def capture_send(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_status["code"] = message["status"]
            elif message["type"] == "http.response.body" and len(response_body) < _MAX_CAPTURE_BYTES:
                response_body.extend(message.get("body", b""))
            await send(message)

        try:
            await self.app(scope, capture_receive, capture_send)
        finally:
            state: dict[str, Any] = scope.get("state") or {}
            trail = state.get("audit_trail")
            events = state.get("security_events") or []
            if isinstance(trail, AuditTrail) or events:
                duration_ms = round((time.perf_counter() - started) * 1000, 2)
                await run_in_threadpool(
                    _flush,
                    scope,
                    trail if isinstance(trail, AuditTrail) else None,
                    list(events),
                    response_status["code"],
                    duration_ms,
                    bytes(request_body),
                    bytes(response_body),
                )


def _flush(
    scope: Scope,
    trail: AuditTrail | None,
    events: list[PendingSecurityEvent],
    status_code: int,
    duration_ms: float,
    request_body: bytes,
    response_body: bytes,
) -> None:
    state: dict[str, Any] = scope.get("state") or {}
    actor = state.get("actor")
    actor = actor if isinstance(actor, Actor) else None
    headers = {key.decode("latin-1").lower(): value.decode("latin-1") for key, value in scope.get("headers", [])}
    client = scope.get("client")
    ip_address = client[0] if client else None
    user_agent = headers.get("user-agent")
    correlation_id = headers.get("x-correlation-id") or get_correlation_id()
    audit_logger = get_audit_logger()

    for event in events:
        audit_logger.record_security_event(
            event,
            ip_address=ip_address,
            user_agent=user_agent,
            correlation_id=correlation_id,
        )

    if trail is None:
        return
    success = 200 <= status_code < 300
    if not success and not trail.log_failures:
        return

    method = scope.get("method", "GET")
    query = scope.get("query_string", b"").decode("latin-1")
    url = scope.get("path", "") + (f"?{query}" if query else "")
    context = AuditContext(
        method=method,
        url=url,
        status_code=status_code,
        success=success,
        duration_ms=duration_ms,
        ip_address=ip_address,
        user_agent=user_agent,
        body=_decode_json(request_body) if trail.include_body and method != "GET" else None,
        sensitive=trail.sensitive,
        correlation_id=correlation_id,
    )
    audit_logger.record(
        trail.action or action_for_method(method),
        trail.entity_type,
        trail.entity_id or _resolve_entity_id(scope, response_body),
        actor,
        context,
    )


def _resolve_entity_id(scope: Scope, response_body: bytes) -> str | None:
    path_params: dict[str, Any] = scope.get("path_params") or {}
    for key, value in path_params.items():
        if key == "id" or key.endswith("_id"):
            return str(value)

    payload = _decode_json(response_body)
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, dict) and data.get("id") is not None:
            return str(data["id"])
    return None


def _decode_json(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        logger.debug("audit.body_not_json")
        return None
