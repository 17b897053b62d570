from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmcore.audit.logger import AuditLogger, bound_session_scope, get_audit_logger, set_audit_logger
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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
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


def _user(session: Session, email: str) -> User:
    user = User(email=email, full_name="Rate Limited", role="Manager")
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def _headers(user: User) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode(
        {"sub": str(user.id), "role": user.role, "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    return {"Authorization": f"Bearer {token}"}


def test_mutating_endpoints_are_rate_limited(client: TestClient, db_session: Session) -> None:
    user = _user(db_session, "limited@example.com")

    responses = [
        client.post(
            "/api/v1/companies",
            json={"name": f"Company {index}", "contact_person": "Ann"},
            headers=_headers(user),
        )
        for index in range(5)
    ]

    assert [response.status_code for response in responses[:3]] == [201, 201, 201]
    limited = responses[3]
    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) >= 1
    body = limited.json()
    assert body["success"] is False
    assert body["code"] == "RATE_LIMITED"
    assert body["details"]["route_group"] == "companies"


def test_reads_are_not_rate_limited(client: TestClient, db_session: Session) -> None:
    user = _user(db_session, "reader@example.com")

    statuses = [client.get("/api/v1/companies", headers=_headers(user)).status_code for _ in range(5)]

    assert statuses == [200] * 5


def test_buckets_are_per_user(client: TestClient, db_session: Session) -> None:
    first = _user(db_session, "first@example.com")
    second = _user(db_session, "second@example.com")

    for index in range(3):
        client.post(
            "/api/v1/companies",
            json={"name": f"First {index}", "contact_person": "Ann"},
            headers=_headers(first),
        )

    response = client.post(
        "/api/v1/companies",
        json={"name": "Second", "contact_person": "Ann"},
        headers=_headers(second),
    )
    assert response.status_code == 201


def test_remaining_budget_is_reported(client: TestClient, db_session: Session) -> None:
    user = _user(db_session, "budget@example.com")

    first = client.post("/api/v1/companies", json={"name": "Budget 1", "contact_person": "Ann"}, headers=_headers(user))
    second = client.post("/api/v1/companies", json={"name": "Budget 2", "contact_person": "Ann"}, headers=_headers(user))

    assert first.headers["X-RateLimit-Remaining"] == "2"
    assert second.headers["X-RateLimit-Remaining"] == "1"
