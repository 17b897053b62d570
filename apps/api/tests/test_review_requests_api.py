from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmcore.audit.logger import AuditLogger, bound_session_scope, get_audit_logger, set_audit_logger
from crmcore.audit.models import AuditLog, SecurityEvent
from crmcore.core.config import get_settings
from crmcore.core.database import Base, get_db
from crmcore.crm.models import Company, FollowUp, FollowUpDeletionRequest, Notification, ProfileChangeRequest, User
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


def _user(session: Session, role: str, **values: object) -> User:
    user = User(
        email=values.pop("email", None) or f"{role.lower()}-{uuid.uuid4().hex[:8]}@example.com",
        full_name=values.pop("full_name", None) or f"{role} User",
        role=role,
        **values,
    )
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


def _follow_up(session: Session, owner: User) -> FollowUp:
    company = Company(name="Acme", contact_person="Jane", assigned_data_collector_id=owner.id)
    session.add(company)
    session.commit()
    follow_up = FollowUp(
        company_id=company.id,
        contacted_date=date(2026, 10, 1),
        follow_up_date=date(2026, 10, 8),
        created_by_id=owner.id,
    )
    session.add(follow_up)
    session.commit()
    session.refresh(follow_up)
    return follow_up


def _request_deletion(client: TestClient, requester: User, follow_up: FollowUp) -> dict:
    response = client.post(
        "/api/v1/follow-up-deletion-requests",
        json={"follow_up_id": str(follow_up.id), "reason": "logged against the wrong company"},
        headers=_headers(requester),
    )
    assert response.status_code == 201
    return response.json()["data"]


def _notifications(session: Session, user: User) -> list[Notification]:
    session.expire_all()
    return list(session.scalars(select(Notification).where(Notification.user_id == user.id)).all())


def test_deletion_request_notifies_reviewers_and_blocks_duplicates(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")
    manager = _user(db_session, "Manager")
    admin = _user(db_session, "Admin")
    head = _user(db_session, "Head")
    follow_up = _follow_up(db_session, collector)

    data = _request_deletion(client, collector, follow_up)
    assert data["status"] == "pending"
    assert data["requested_by_id"] == str(collector.id)
    assert data["company_id"] == str(follow_up.company_id)

    for reviewer in (manager, admin):
        notes = _notifications(db_session, reviewer)
        assert [note.entity_type for note in notes] == ["follow_up_deletion_request"]
        assert notes[0].entity_id == uuid.UUID(data["id"])
    assert _notifications(db_session, head) == []
    assert _notifications(db_session, collector) == []

    response = client.post(
        "/api/v1/follow-up-deletion-requests",
        json={"follow_up_id": str(follow_up.id)},
        headers=_headers(collector),
    )
    assert response.status_code == 409
    assert response.json()["error"] == "a deletion request for this follow-up is already pending"


def test_deletion_request_validation(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")
    follow_up = _follow_up(db_session, collector)

    response = client.post(
        "/api/v1/follow-up-deletion-requests",
        json={"follow_up_id": str(follow_up.id), "reason": "short"},
        headers=_headers(collector),
    )
    assert response.status_code == 400
    assert response.json()["details"][0]["field"] == "reason"

    response = client.post(
        "/api/v1/follow-up-deletion-requests",
        json={"follow_up_id": str(uuid.uuid4())},
        headers=_headers(collector),
    )
    assert response.status_code == 404


def test_read_only_roles_cannot_request_deletion(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")
    head = _user(db_session, "Head")
    follow_up = _follow_up(db_session, collector)

    response = client.post(
        "/api/v1/follow-up-deletion-requests",
        json={"follow_up_id": str(follow_up.id)},
        headers=_headers(head),
    )
    assert response.status_code == 403
    assert response.json()["error"] == "read-only access"


def test_approval_deletes_follow_up_and_notifies_requester(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")
    manager = _user(db_session, "Manager")
    follow_up = _follow_up(db_session, collector)
    request_id = _request_deletion(client, collector, follow_up)["id"]

    response = client.put(
        f"/api/v1/follow-up-deletion-requests/{request_id}/review",
        json={"action": "approve"},
        headers=_headers(manager),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "approved"
    assert data["reviewed_by_id"] == str(manager.id)
    assert data["reviewed_at"] is not None

    db_session.expire_all()
    assert db_session.get(FollowUp, follow_up.id) is None
    notes = _notifications(db_session, collector)
    assert [note.type for note in notes] == ["deletion_request_approved"]

    response = client.put(
        f"/api/v1/follow-up-deletion-requests/{request_id}/review",
        json={"action": "reject"},
        headers=_headers(manager),
    )
    assert response.status_code == 409
    assert response.json()["error"] == "deletion request has already been reviewed"

    event = db_session.scalars(
        select(SecurityEvent).where(SecurityEvent.event_type == "AUDIT_APPROVE_FOLLOW_UP_DELETION_REQUEST")
    ).one()
    assert event.user_id == manager.id


def test_rejection_keeps_follow_up_and_records_reason(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")
    manager = _user(db_session, "Manager")
    follow_up = _follow_up(db_session, collector)
    request_id = _request_deletion(client, collector, follow_up)["id"]

    response = client.put(
        f"/api/v1/follow-up-deletion-requests/{request_id}/review",
        json={"action": "reject", "rejection_reason": "still needed for the drive"},
        headers=_headers(manager),
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "rejected"
    assert response.json()["data"]["rejection_reason"] == "still needed for the drive"

    db_session.expire_all()
    assert db_session.get(FollowUp, follow_up.id) is not None
    notes = _notifications(db_session, collector)
    assert notes[0].message.endswith(": still needed for the drive")
    actions = db_session.scalars(
        select(AuditLog.action).where(AuditLog.entity_type == "follow_up_deletion_request")
    ).all()
    assert sorted(actions) == ["CREATE", "REJECT"]


def test_only_managers_review_and_read_only_roles_can_list(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")
    converter = _user(db_session, "Converter")
    subhead = _user(db_session, "SubHead")
    follow_up = _follow_up(db_session, collector)
    request_id = _request_deletion(client, collector, follow_up)["id"]

    for reviewer in (converter, subhead):
        response = client.put(
            f"/api/v1/follow-up-deletion-requests/{request_id}/review",
            json={"action": "approve"},
            headers=_headers(reviewer),
        )
        assert response.status_code == 403

    response = client.get("/api/v1/follow-up-deletion-requests", headers=_headers(subhead))
    assert response.status_code == 200
    assert [row["id"] for row in response.json()["data"]] == [request_id]
    assert response.json()["pagination"]["total"] == 1

    response = client.get("/api/v1/follow-up-deletion-requests", headers=_headers(collector))
    assert response.status_code == 403

    db_session.expire_all()
    assert db_session.get(FollowUp, follow_up.id) is not None


def test_pending_requests_are_listed_first(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")
    manager = _user(db_session, "Manager")
    reviewed_id = _request_deletion(client, collector, _follow_up(db_session, collector))["id"]
    client.put(
        f"/api/v1/follow-up-deletion-requests/{reviewed_id}/review",
        json={"action": "reject"},
        headers=_headers(manager),
    )
    pending_id = _request_deletion(client, collector, _follow_up(db_session, collector))["id"]

    response = client.get("/api/v1/follow-up-deletion-requests", headers=_headers(manager))
    assert [row["id"] for row in response.json()["data"]] == [pending_id, reviewed_id]

    response = client.get("/api/v1/follow-up-deletion-requests?status=rejected", headers=_headers(manager))
    assert [row["id"] for row in response.json()["data"]] == [reviewed_id]

    response = client.get("/api/v1/follow-up-deletion-requests/my", headers=_headers(collector))
    assert {row["id"] for row in response.json()["data"]} == {pending_id, reviewed_id}


def test_requester_can_cancel_only_own_pending_request(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")
    other = _user(db_session, "DataCollector")
    manager = _user(db_session, "Manager")
    request_id = _request_deletion(client, collector, _follow_up(db_session, collector))["id"]

    response = client.delete(f"/api/v1/follow-up-deletion-requests/{request_id}", headers=_headers(other))
    assert response.status_code == 404

    response = client.delete(f"/api/v1/follow-up-deletion-requests/{request_id}", headers=_headers(collector))
    assert response.status_code == 200
    db_session.expire_all()
    assert db_session.get(FollowUpDeletionRequest, uuid.UUID(request_id)) is None

    reviewed_id = _request_deletion(client, collector, _follow_up(db_session, collector))["id"]
    client.put(
        f"/api/v1/follow-up-deletion-requests/{reviewed_id}/review",
        json={"action": "reject"},
        headers=_headers(manager),
    )
    response = client.delete(f"/api/v1/follow-up-deletion-requests/{reviewed_id}", headers=_headers(collector))
    assert response.status_code == 409


def test_profile_change_is_applied_only_after_admin_approval(client: TestClient, db_session: Session) -> None:
    converter = _user(db_session, "Converter", full_name="Old Name", region="North")
    admin = _user(db_session, "Admin")

    response = client.post(
        "/api/v1/profile-changes",
        json={"full_name": "New Name", "region": "South"},
        headers=_headers(converter),
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["requested_changes"] == {"full_name": "New Name", "region": "South"}
    assert data["current_values"]["full_name"] == "Old Name"

    db_session.expire_all()
    assert db_session.get(User, converter.id).full_name == "Old Name"

    response = client.post(f"/api/v1/profile-changes/{data['id']}/approve", headers=_headers(admin))
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "approved"
    assert response.json()["data"]["reviewed_by_id"] == str(admin.id)

    db_session.expire_all()
    stored = db_session.get(User, converter.id)
    assert stored.full_name == "New Name"
    assert stored.region == "South"
    assert [note.type for note in _notifications(db_session, converter)] == ["profile_change_approved"]

    response = client.post(f"/api/v1/profile-changes/{data['id']}/approve", headers=_headers(admin))
    assert response.status_code == 404


def test_profile_change_requests_are_one_at_a_time(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")

    response = client.post("/api/v1/profile-changes", json={"region": "West"}, headers=_headers(collector))
    assert response.status_code == 201
    first_id = response.json()["data"]["id"]

    response = client.post("/api/v1/profile-changes", json={"region": "East"}, headers=_headers(collector))
    assert response.status_code == 409

    response = client.delete(f"/api/v1/profile-changes/{first_id}", headers=_headers(collector))
    assert response.status_code == 200

    response = client.post("/api/v1/profile-changes", json={"region": "East"}, headers=_headers(collector))
    assert response.status_code == 201

    response = client.get("/api/v1/profile-changes/my", headers=_headers(collector))
    assert [row["requested_changes"] for row in response.json()["data"]] == [{"region": "East"}]


def test_profile_change_validation(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")
    _user(db_session, "Manager", email="taken@example.com")

    response = client.post("/api/v1/profile-changes", json={}, headers=_headers(collector))
    assert response.status_code == 400

    response = client.post("/api/v1/profile-changes", json={"full_name": None}, headers=_headers(collector))
    assert response.status_code == 400
    assert response.json()["details"][0]["field"] == "full_name"

    response = client.post(
        "/api/v1/profile-changes", json={"email": "Taken@Example.com"}, headers=_headers(collector)
    )
    assert response.status_code == 400
    assert response.json()["details"] == [
        {"field": "email", "message": "email already registered", "code": "duplicate"}
    ]


def test_profile_change_review_is_admin_only(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")
    manager = _user(db_session, "Manager")
    admin = _user(db_session, "Admin")
    response = client.post("/api/v1/profile-changes", json={"region": "West"}, headers=_headers(collector))
    request_id = response.json()["data"]["id"]

    assert client.get("/api/v1/profile-changes", headers=_headers(manager)).status_code == 403
    response = client.post(f"/api/v1/profile-changes/{request_id}/approve", headers=_headers(manager))
    assert response.status_code == 403

    response = client.get("/api/v1/profile-changes?status=pending", headers=_headers(admin))
    assert [row["id"] for row in response.json()["data"]] == [request_id]

    response = client.post(
        f"/api/v1/profile-changes/{request_id}/reject",
        json={"reason": "region is set by the office"},
        headers=_headers(admin),
    )
    assert response.status_code == 200
    assert response.json()["data"]["rejection_reason"] == "region is set by the office"

    db_session.expire_all()
    assert db_session.get(User, collector.id).region is None
    stored = db_session.get(ProfileChangeRequest, uuid.UUID(request_id))
    assert stored.status == "rejected"
    assert _notifications(db_session, collector)[0].message.endswith(": region is set by the office")
