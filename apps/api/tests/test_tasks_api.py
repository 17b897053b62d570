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
from crmcore.core.config import get_settings
from crmcore.core.database import Base, get_db
from crmcore.crm.models import Notification, Task, Ticket, User
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
        email=f"{role.lower()}-{uuid.uuid4().hex[:8]}@example.com",
        full_name=f"{role} User",
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


def _task(session: Session, assignee: User, assigner: User, title: str = "Call leads") -> Task:
    task = Task(title=title, assigned_to_id=assignee.id, assigned_by_id=assigner.id)
    session.add(task)
    session.commit()
    session.refresh(task)
    return task


def test_manager_assigns_task_and_assignee_is_notified(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    collector = _user(db_session, "DataCollector")

    response = client.post(
        "/api/v1/tasks",
        json={"title": "Collect 20 companies", "assigned_to_id": str(collector.id)},
        headers=_headers(manager),
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "NotYet"
    assert data["assigned_by_id"] == str(manager.id)

    notifications = db_session.scalars(select(Notification).where(Notification.user_id == collector.id)).all()
    assert [item.type for item in notifications] == ["task_assigned"]

    response = client.get("/api/v1/tasks/my/count", headers=_headers(collector))
    assert response.status_code == 200
    assert response.json()["data"] == {"count": 1}

    response = client.get("/api/v1/notifications", headers=_headers(collector))
    assert response.status_code == 200
    assert len(response.json()["data"]) == 1


def test_assignment_follows_role_hierarchy(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    subhead = _user(db_session, "SubHead")

    response = client.post(
        "/api/v1/tasks",
        json={"title": "Review", "assigned_to_id": str(subhead.id)},
        headers=_headers(manager),
    )

    assert response.status_code == 403
    assert response.json()["error"] == "cannot assign to this role"
    assert db_session.scalar(select(Task)) is None


def test_assignee_must_exist(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")

    response = client.post(
        "/api/v1/tasks",
        json={"title": "Review", "assigned_to_id": str(uuid.uuid4())},
        headers=_headers(manager),
    )

    assert response.status_code == 400
    assert response.json()["details"][0]["field"] == "assigned_to_id"


def test_workers_cannot_create_tasks(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector")
    converter = _user(db_session, "Converter")

    response = client.post(
        "/api/v1/tasks",
        json={"title": "Self assigned", "assigned_to_id": str(converter.id)},
        headers=_headers(collector),
    )

    assert response.status_code == 403
    assert response.json()["error"] == "missing permission: canAssignTasks"


def test_non_assignee_is_denied_before_payload_validation(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    assignee = _user(db_session, "DataCollector")
    other = _user(db_session, "DataCollector")
    task = _task(db_session, assignee, manager)

    response = client.put(f"/api/v1/tasks/{task.id}", json={"status": "Bogus"}, headers=_headers(other))

    assert response.status_code == 403
    assert response.json()["error"] == "not the owner of this task"


def test_assignee_can_only_change_status(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    assignee = _user(db_session, "Converter")
    task = _task(db_session, assignee, manager)

    response = client.put(f"/api/v1/tasks/{task.id}", json={"status": "InProgress"}, headers=_headers(assignee))
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "InProgress"

    response = client.put(f"/api/v1/tasks/{task.id}", json={"title": "Renamed"}, headers=_headers(assignee))
    assert response.status_code == 403
    assert response.json()["error"] == "only status can be updated; not allowed: title"

    response = client.put(f"/api/v1/tasks/{task.id}", json={"status": "Bogus"}, headers=_headers(assignee))
    assert response.status_code == 400
    assert response.json()["details"][0]["field"] == "status"


def test_manager_can_update_and_delete_any_task(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    assignee = _user(db_session, "DataCollector")
    task = _task(db_session, assignee, manager)

    response = client.put(
        f"/api/v1/tasks/{task.id}",
        json={"title": "Renamed", "status": "Completed"},
        headers=_headers(manager),
    )
    assert response.status_code == 200
    assert response.json()["data"]["title"] == "Renamed"

    response = client.get("/api/v1/tasks/my/count", headers=_headers(assignee))
    assert response.json()["data"] == {"count": 0}

    response = client.delete(f"/api/v1/tasks/{task.id}", headers=_headers(assignee))
    assert response.status_code == 403

    response = client.delete(f"/api/v1/tasks/{task.id}", headers=_headers(manager))
    assert response.status_code == 200
    db_session.expire_all()
    assert db_session.get(Task, task.id) is None


def test_workers_only_see_their_own_tasks(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    mine = _user(db_session, "DataCollector")
    theirs = _user(db_session, "DataCollector")
    _task(db_session, mine, manager, title="Mine")
    _task(db_session, theirs, manager, title="Theirs")

    response = client.get("/api/v1/tasks", headers=_headers(mine))
    assert [item["title"] for item in response.json()["data"]] == ["Mine"]

    response = client.get("/api/v1/tasks", headers=_headers(manager))
    assert response.json()["pagination"]["total"] == 2


def test_ticket_resolution_notifies_raiser(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    collector = _user(db_session, "DataCollector")

    response = client.post(
        "/api/v1/tickets",
        json={"title": "Login broken", "description": "Cannot sign in", "assigned_to_id": str(manager.id)},
        headers=_headers(collector),
    )
    assert response.status_code == 201
    ticket_id = response.json()["data"]["id"]

    response = client.get("/api/v1/tickets/my/count", headers=_headers(manager))
    assert response.json()["data"] == {"count": 1}

    response = client.put(f"/api/v1/tickets/{ticket_id}", json={"is_resolved": True}, headers=_headers(manager))
    assert response.status_code == 200
    assert response.json()["data"]["is_resolved"] is True

    notifications = db_session.scalars(select(Notification).where(Notification.user_id == collector.id)).all()
    assert [item.type for item in notifications] == ["ticket_resolved"]


def test_ticket_raising_can_be_disabled(client: TestClient, db_session: Session) -> None:
    collector = _user(db_session, "DataCollector", can_raise_tickets=False)

    response = client.post(
        "/api/v1/tickets",
        json={"title": "Help", "description": "Need help"},
        headers=_headers(collector),
    )

    assert response.status_code == 403
    assert response.json()["error"] == "ticket raising is disabled for this user"


def test_explicit_nulls_are_rejected_as_field_errors(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    collector = _user(db_session, "DataCollector")
    task = _task(db_session, collector, manager)

    response = client.put(f"/api/v1/tasks/{task.id}", json={"status": None}, headers=_headers(collector))
    assert response.status_code == 400
    assert [detail["field"] for detail in response.json()["details"]] == ["status"]

    response = client.put(f"/api/v1/tasks/{task.id}", json={"title": None}, headers=_headers(manager))
    assert response.status_code == 400
    assert response.json()["details"][0]["field"] == "title"

    db_session.refresh(task)
    assert task.title == "Call leads"
    assert task.status == "NotYet"


def test_nullable_task_fields_can_still_be_cleared(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    collector = _user(db_session, "DataCollector")
    task = _task(db_session, collector, manager)

    response = client.put(
        f"/api/v1/tasks/{task.id}",
        json={"description": None, "deadline": None},
        headers=_headers(manager),
    )

    assert response.status_code == 200
    assert response.json()["data"]["description"] is None


def test_ticket_resolution_cannot_be_nulled(client: TestClient, db_session: Session) -> None:
    manager = _user(db_session, "Manager")
    collector = _user(db_session, "DataCollector")
    ticket = Ticket(title="Broken import", description="CSV rejected", assigned_to_id=collector.id, raised_by_id=manager.id)
    db_session.add(ticket)
    db_session.commit()

    response = client.put(f"/api/v1/tickets/{ticket.id}", json={"is_resolved": None}, headers=_headers(collector))

    assert response.status_code == 400
    assert response.json()["details"][0]["field"] == "is_resolved"
