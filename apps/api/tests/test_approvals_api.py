from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmcore.audit.logger import AuditLogger, bound_session_scope, get_audit_logger, set_audit_logger
from crmcore.audit.models import AuditLog, SecurityEvent
from crmcore.core.config import get_settings
from crmcore.core.database import Base, get_db
from crmcore.crm.models import Company, Notification, User
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
def disable_rate_limit(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
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


def _user(session: Session, role: str) -> User:
    user = User(email=f"{role.lower()}-{uuid.uuid4().hex[:8]}@example.com", full_name=f"{role} User", role=role)
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


def _company(session: Session, name: str, **values: object) -> Company:
    company = Company(name=name, contact_person="Jane", **values)
    session.add(company)
    session.commit()
    session.refresh(company)
    return company


def test_bulk_approve_reports_per_item_outcomes(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    converter = _user(db_session, "Converter")
    first = _company(db_session, "A", assigned_converter_id=converter.id)
    already = _company(db_session, "B", finalization_status="Finalized")
    third = _company(db_session, "C")

    response = client.put(
        "/api/v1/companies/approvals/bulk",
        json={"company_ids": [str(first.id), str(already.id), str(third.id)], "action": "approve"},
        headers=_headers(manager),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["updated"] == 2
    assert data["failed"] == [{"id": str(already.id), "reason": "company is already finalized"}]

    db_session.expire_all()
    assert db_session.get(Company, first.id).finalization_status == "Finalized"
    assert db_session.get(Company, third.id).finalization_status == "Finalized"

    notifications = db_session.scalars(select(Notification).where(Notification.user_id == converter.id)).all()
    assert [item.type for item in notifications] == ["company_approved"]


def test_bulk_approve_unknown_id_fails_alone(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    company = _company(db_session, "A")
    missing = uuid.uuid4()

    response = client.put(
        "/api/v1/companies/approvals/bulk",
        json={"company_ids": [str(missing), str(company.id)], "action": "approve"},
        headers=_headers(manager),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["updated"] == 1
    assert data["failed"] == [{"id": str(missing), "reason": "company not found"}]


def test_bulk_limit_is_enforced_before_any_change(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    company = _company(db_session, "A")
    company_ids = [str(company.id)] + [str(uuid.uuid4()) for _ in range(50)]

    response = client.put(
        "/api/v1/companies/approvals/bulk",
        json={"company_ids": company_ids, "action": "approve"},
        headers=_headers(manager),
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "BULK_LIMIT_EXCEEDED"
    assert body["error"] == "too many items"
    assert body["details"] == {"limit": 50, "received": 51}

    db_session.expire_all()
    assert db_session.get(Company, company.id).finalization_status == "Pending"


def test_bulk_review_requires_finalizer_role(client: TestClient, db_session: Session) -> None:
    converter = _user(db_session, "Converter")
    company = _company(db_session, "A")

    response = client.put(
        "/api/v1/companies/approvals/bulk",
        json={"company_ids": [str(company.id)], "action": "approve"},
        headers=_headers(converter),
    )

    assert response.status_code == 403
    assert response.json()["error"] == "insufficient role"


def test_bulk_reject_records_decision_and_keeps_pending(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    pending = _company(db_session, "A")
    finalized = _company(db_session, "B", finalization_status="Finalized")

    response = client.put(
        "/api/v1/companies/approvals/bulk",
        json={"company_ids": [str(pending.id), str(finalized.id)], "action": "reject"},
        headers=_headers(manager),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["updated"] == 1
    assert data["failed"] == [{"id": str(finalized.id), "reason": "company is Finalized"}]

    db_session.expire_all()
    stored = db_session.get(Company, pending.id)
    assert stored.finalization_status == "Pending"
    assert stored.review_decision == "rejected"
    assert stored.reviewed_by_id == manager.id


def test_approval_queue_lists_pending_only(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    collector = _user(db_session, "DataCollector")
    _company(db_session, "Waiting")
    _company(db_session, "Done", finalization_status="Finalized")

    response = client.get("/api/v1/companies/approvals", headers=_headers(manager))
    assert response.status_code == 200
    assert [item["name"] for item in response.json()["data"]] == ["Waiting"]

    response = client.get("/api/v1/companies/approvals", headers=_headers(collector))
    assert response.status_code == 200
    assert response.json()["data"] == []


def test_import_keeps_valid_records_and_reports_invalid_ones(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")

    response = client.post(
        "/api/v1/companies/import",
        json={
            "companies": [
                {"name": "First", "contact_person": "Ann"},
                {"contact_person": "No Name"},
                {"name": "Third", "email": "third@example.com"},
            ]
        },
        headers=_headers(collector),
    )

    assert response.status_code == 207
    data = response.json()["data"]
    assert data["count"] == 2
    assert len(data["errors"]) == 1
    error = data["errors"][0]
    assert error["index"] == 1
    assert error["name"] is None
    assert error["errors"][0]["field"] == "name"

    names = db_session.scalars(select(Company.name).order_by(Company.name)).all()
    assert names == ["First", "Third"]


def test_import_without_errors_returns_created(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")

    response = client.post(
        "/api/v1/companies/import",
        json={"companies": [{"name": "Solo"}]},
        headers=_headers(manager),
    )

    assert response.status_code == 201
    assert response.json()["data"] == {"count": 1, "errors": []}


def test_import_respects_limit(client: TestClient, db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    manager = _user(db_session, "Manager")
    monkeypatch.setenv("IMPORT_MAX_ITEMS", "2")
    get_settings.cache_clear()

    response = client.post(
        "/api/v1/companies/import",
        json={"companies": [{"name": "One"}, {"name": "Two"}, {"name": "Three"}]},
        headers=_headers(manager),
    )

    assert response.status_code == 400
    assert response.json()["details"] == {"limit": 2, "received": 3}
    assert db_session.scalar(select(func.count()).select_from(Company)) == 0


def test_bulk_actions_are_audited_with_their_own_action(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    approved = _company(db_session, "Approved")
    rejected = _company(db_session, "Rejected")

    client.put(
        "/api/v1/companies/approvals/bulk",
        json={"company_ids": [str(approved.id)], "action": "approve"},
        headers=_headers(manager),
    )
    client.put(
        "/api/v1/companies/approvals/bulk",
        json={"company_ids": [str(rejected.id)], "action": "reject"},
        headers=_headers(manager),
    )

    db_session.expire_all()
    assert sorted(db_session.scalars(select(AuditLog.action)).all()) == ["FINALIZE", "REJECT"]

    approve_event = db_session.scalars(
        select(SecurityEvent).where(SecurityEvent.event_type == "AUDIT_FINALIZE_COMPANY_APPROVAL")
    ).one()
    reject_event = db_session.scalars(
        select(SecurityEvent).where(SecurityEvent.event_type == "AUDIT_REJECT_COMPANY_APPROVAL")
    ).one()
    assert approve_event.severity == "medium"
    assert reject_event.severity == "low"
