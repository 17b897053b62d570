from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from json import JSONDecodeError
from typing import Any

from fastapi import Depends, Request
from jose import JWTError, jwt
from opentelemetry import trace
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from crmcore.audit.logger import PendingSecurityEvent
from crmcore.audit.trail import queue_security_event
from crmcore.context import bind_actor
from crmcore.core.config import get_settings
from crmcore.core.database import get_db
from crmcore.crm.models import User
from crmcore.metrics import observe_guard_denial
from crmcore.otel import annotate_actor_span
from crmcore.security.context import Actor, EntityState
from crmcore.security.errors import AuthenticationError, NotFoundError
from crmcore.security.guards import Guard, GuardChain, GuardContext
from crmcore.security.permissions import parse_role


logger = logging.getLogger("app.security")
tracer = trace.get_tracer("app.security")

EntityLoader = Callable[[Session, dict[str, Any]], EntityState | None]


def decode_token(token: str) -> dict[str, Any] | None:
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require_exp": True},
        )
    except JWTError:
        return None


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "", 1) if auth_header.startswith("Bearer ") else ""


def _load_actor(session: Session, payload: dict[str, Any]) -> Actor | None:
    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        return None

    user = session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    if user.locked_until is not None and _as_aware(user.locked_until) > datetime.now(timezone.utc):
        return None

    role = parse_role(user.role)
    if role is None or payload.get("role") != role.value:
        return None

    return Actor(
        user_id=user.id,
        role=role,
        email=user.email,
        region=user.region,
        can_raise_tickets=user.can_raise_tickets,
    )


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


async def resolve_actor(request: Request, db: Session = Depends(get_db)) -> Actor | None:
    """Authenticate the bearer token against the users table; ``None`` when it does not check out."""
    cached = getattr(request.state, "actor", None)
    if isinstance(cached, Actor):
        return cached

    token = _bearer_token(request)
    if not token:
        return None
    payload = decode_token(token)
    if payload is None:
        return None

    actor = await run_in_threadpool(_load_actor, db, payload)
    if actor is not None:
        request.state.actor = actor
        bind_actor(actor.id_str, actor.role.value)
        annotate_actor_span(actor.id_str, actor.role.value)
    return actor


def _item_counter(items_field: str | None) -> Callable[[Request], Awaitable[int | None]]:
    async def count_items(request: Request) -> int | None:
        if items_field is None:
            return None
        try:
            body = await request.json()
        except (JSONDecodeError, UnicodeDecodeError):
            return None
        if isinstance(body, dict):
            body = body.get(items_field)
        return len(body) if isinstance(body, list) else None

    return count_items


def route_guard(
    *guards: Guard,
    entity: EntityLoader | None = None,
    items_field: str | None = None,
) -> Callable[..., Awaitable[Actor]]:
    """Build a dependency that runs ``guards`` after authentication and returns the actor.

    ``entity`` loads the state of the targeted record from the path parameters;
    a missing record is a 404. ``items_field`` names the request body list whose
    length feeds the bulk limit guard; a top-level JSON array is counted as is.
    """
    chain = GuardChain(guards)

    async def dependency(
        request: Request,
        db: Session = Depends(get_db),
        actor: Actor | None = Depends(resolve_actor),
        item_count: int | None = Depends(_item_counter(items_field)),
    ) -> Actor:
        ctx = GuardContext(actor=actor, method=request.method, path=request.url.path, item_count=item_count)
        with tracer.start_as_current_span("guard_chain.evaluate") as span:
            # Entity-bound guards pass without an entity, so role and permission checks run
            # before the lookup and a denied caller cannot tell which ids exist.
            decision = chain.evaluate(ctx)
            if decision.allowed and entity is not None:
                ctx.entity = await run_in_threadpool(entity, db, dict(request.path_params))
                if ctx.entity is None:
                    span.set_attribute("guard.allowed", False)
                    raise NotFoundError("not found")
                decision = chain.evaluate(ctx)
            span.set_attribute("guard.allowed", decision.allowed)
            if decision.event_type:
                span.set_attribute("guard.event_type", decision.event_type)

        if not decision.allowed:
            event_type = decision.event_type or "ACCESS_DENIED"
            observe_guard_denial(event_type)
            queue_security_event(
                request,
                PendingSecurityEvent(
                    event_type=event_type,
                    severity=decision.severity,
                    details={
                        **decision.details,
                        "reason": decision.reason,
                        "method": request.method,
                        "path": request.url.path,
                    },
                    user_id=actor.user_id if actor else None,
                ),
            )
            logger.warning(
                "guard.denied",
                extra={
                    "event_type": event_type,
                    "reason": decision.reason,
                    "method": request.method,
                    "path": request.url.path,
                    "role": actor.role.value if actor else None,
                },
            )
            raise decision.to_error()

        if actor is None:
            raise AuthenticationError()
        return actor

    return dependency
