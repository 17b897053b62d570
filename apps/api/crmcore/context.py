from __future__ import annotations

from contextvars import ContextVar, Token
from dataclasses import dataclass

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
actor_var: ContextVar["ActorStamp | None"] = ContextVar("actor", default=None)


@dataclass(frozen=True)
class ActorStamp:
    """Who is acting in the current request, as stamped onto log records."""

    user_id: str
    role: str


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def bind_actor(user_id: str, role: str) -> Token[ActorStamp | None]:
    return actor_var.set(ActorStamp(user_id=user_id, role=role))


def clear_actor() -> Token[ActorStamp | None]:
    return actor_var.set(None)


def reset_actor(token: Token[ActorStamp | None]) -> None:
    actor_var.reset(token)


def get_actor() -> ActorStamp | None:
    return actor_var.get()


def get_log_context() -> dict[str, str | None]:
    actor = get_actor()
    return {
        "correlation_id": get_correlation_id(),
        "actor_id": actor.user_id if actor else None,
        "actor_role": actor.role if actor else None,
    }
