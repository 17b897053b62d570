from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from crmcore.core.config import get_settings


class Base(DeclarativeBase):
    pass


_TIMEOUT_MARKERS = (
    "statement timeout",
    "canceling statement due to statement timeout",
    "database is locked",
)


def _connect_args(database_url: str, timeout_seconds: int) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout_seconds}
    if database_url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={timeout_seconds * 1000}"}
    return {}


def build_engine(database_url: str, timeout_seconds: int):  # type: ignore[no-untyped-def]
    return create_engine(
        database_url,
        pool_pre_ping=True,
        connect_args=_connect_args(database_url, timeout_seconds),
    )


settings = get_settings()
engine = build_engine(settings.database_url, settings.query_timeout_seconds)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def is_query_timeout(exc: BaseException) -> bool:
    if not isinstance(exc, OperationalError):
        return False
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _TIMEOUT_MARKERS)
