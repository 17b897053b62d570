from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmcore.audit.logger import AuditLogger, bound_session_scope, get_audit_logger, set_audit_logger
from crmcore.audit.models import SecurityEvent
from crmcore.core.config import get_settings
from crmcore.core.database import Base, get_db
from crmcore.crm.models import User
from crmcore.main import app
from crmcore.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_state() -> Generator[None, None, None]:
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    original_audit_logger = get_audit_logger()
    set_audit_logger(AuditLogger(bound_session_scope(db_session.get_bind())))
    with TestClient(app) as test_client:
        yield test_client
    set_audit_logger(original_audit_logger)
    app.dependency_overrides.clear()


@pytest.fixture()
def manager(db_session: Session) -> User:
    user = User(email="manager@example.com", full_name="Mona Manager", role="Manager")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


def _headers(user: User, correlation_id: str | None = None) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode(
        {"sub": str(user.id), "role": user.role, "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    headers = {"Authorization": f"Bearer {token}"}
    if correlation_id:
        headers["X-Correlation-Id"] = correlation_id
    return headers


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient, manager: User) -> None:
    response = client.get(f"/api/v1/companies/{uuid.uuid4()}", headers=_headers(manager))
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["request_id"] == header_value
    assert body["code"] == "NOT_FOUND"


def test_correlation_id_respected_when_provided(client: TestClient, manager: User) -> None:
    response = client.get("/api/v1/companies", headers=_headers(manager, "abc-123"))
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["request_id"] == "abc-123"


def test_security_event_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    response = client.get("/api/v1/tasks", headers={"X-Correlation-Id": "corr-denied-1"})
    assert response.status_code == 401

    event = db_session.scalars(select(SecurityEvent)).one()
    assert event.event_type == "UNAUTHORIZED_ACCESS"
    assert event.correlation_id == "corr-denied-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    manager: User,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post(
        "/api/v1/companies",
        json={"name": "Rate Limit 1", "contact_person": "Ann"},
        headers=_headers(manager, "corr-rate-1"),
    )
    assert first.status_code == 201

    second = client.post(
        "/api/v1/companies",
        json={"name": "Rate Limit 2", "contact_person": "Ann"},
        headers=_headers(manager, "corr-rate-1"),
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["request_id"] == "corr-rate-1"
    assert payload["code"] == "RATE_LIMITED"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"


def test_malformed_correlation_id_is_replaced(client: TestClient, manager: User) -> None:
    response = client.get("/api/v1/companies", headers=_headers(manager, "bad id with spaces"))

    assert response.status_code == 200
    header_value = response.headers.get("x-correlation-id")
    assert header_value and header_value != "bad id with spaces"
    assert str(uuid.UUID(header_value)) == header_value
    assert response.json()["request_id"] == header_value
