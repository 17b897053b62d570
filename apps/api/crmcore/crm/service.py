from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from crmcore.crm.approvals import company_values
from crmcore.crm.exports import export_companies_csv
from crmcore.crm.finalization import FINALIZED, PENDING
from crmcore.crm.models import Comment, Company, Contact, FollowUp, Task, Ticket, User
from crmcore.crm.schemas import (
    CommentCreate,
    CommentUpdate,
    CompanyCreate,
    CompanyUpdate,
    ContactCreate,
    ContactUpdate,
    FollowUpCreate,
    FollowUpUpdate,
    TaskCreate,
    TaskUpdate,
    TicketCreate,
    TicketUpdate,
)
from crmcore.notifications import NotificationService, notification_service
from crmcore.security.context import Actor
from crmcore.security.errors import (
    AuthorizationError,
    FinalizedEntityError,
    NotFoundError,
    ValidationError,
)
from crmcore.security.hierarchy import can_assign
from crmcore.security.permissions import PermissionFlag, Role


logger = logging.getLogger("app.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def paginate(session: Session, stmt: Select[Any], page: int, limit: int) -> tuple[list[Any], int]:
    total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = session.scalars(stmt.offset((page - 1) * limit).limit(limit)).all()
    return list(rows), total


def _editable_condition(actor: Actor) -> Any:
    if actor.permissions.allows(PermissionFlag.CAN_EDIT_FINALIZED):
        return Company.id.is_not(None)
    return Company.finalization_status == PENDING


class CompanyService:
    entity_type = "company"

    def list_companies(
        self,
        session: Session,
        actor: Actor,
        *,
        filters: dict[str, Any],
        page: int,
        limit: int,
        mine: bool = False,
        finalized_only: bool = False,
    ) -> tuple[list[Company], int]:
        if finalized_only and not actor.permissions.allows(PermissionFlag.CAN_READ_FINALIZED):
            raise AuthorizationError(f"missing permission: {PermissionFlag.CAN_READ_FINALIZED.value}")

        stmt = select(Company).where(self.visibility_filter(actor))
        if finalized_only:
            stmt = stmt.where(Company.finalization_status == FINALIZED)
        if mine:
            stmt = stmt.where(
                or_(
                    Company.assigned_data_collector_id == actor.user_id,
                    Company.assigned_converter_id == actor.user_id,
                    Company.created_by_id == actor.user_id,
                )
            )

        search = filters.get("search")
        if search:
            stmt = stmt.where(Company.name.ilike(f"%{search}%"))
        if filters.get("status"):
            stmt = stmt.where(Company.status == filters["status"])
        if filters.get("conversion_status"):
            stmt = stmt.where(Company.conversion_status == filters["conversion_status"])

        order = Company.finalized_at.desc() if finalized_only else Company.created_at.desc()
        return paginate(session, stmt.order_by(order, Company.id), page, limit)

    def get_company(self, session: Session, actor: Actor, company_id: uuid.UUID) -> Company:
        company = session.get(Company, company_id)
        if company is None or not self._can_view(actor, company):
            raise NotFoundError("company not found")
        if company.finalization_status == FINALIZED and not actor.permissions.allows(
            PermissionFlag.CAN_READ_FINALIZED
        ):
            raise AuthorizationError("finalized companies are not visible to this role")
        return company

    def create_company(self, session: Session, actor: Actor, dto: CompanyCreate) -> Company:
        values = company_values(dto)
        if actor.role == Role.DATA_COLLECTOR and values.get("assigned_data_collector_id") is None:
            values["assigned_data_collector_id"] = actor.user_id
        self._ensure_assignees_exist(session, values)

        company = Company(**values, created_by_id=actor.user_id)
        session.add(company)
        session.commit()
        session.refresh(company)
        logger.info("company.created", extra={"entity_type": self.entity_type, "entity_id": str(company.id)})
        return company

    def update_company(self, session: Session, actor: Actor, company_id: uuid.UUID, dto: CompanyUpdate) -> Company:
        existing = session.get(Company, company_id)
        if existing is None or not self._can_view(actor, existing):
            raise NotFoundError("company not found")
        changes = company_values(dto)
        if not changes:
            return self.get_company(session, actor, company_id)
        self._ensure_assignees_exist(session, changes)
        changes["updated_at"] = utcnow()

        result = session.execute(
            update(Company)
            .where(and_(Company.id == company_id, _editable_condition(actor)))
            .values(**changes)
        )
        if result.rowcount == 0:
            session.rollback()
            if session.get(Company, company_id) is None:
                raise NotFoundError("company not found")
            raise FinalizedEntityError()
        session.commit()
        return self._reload(session, company_id)

    def set_visibility(self, session: Session, actor: Actor, company_id: uuid.UUID, is_public: bool) -> Company:
        result = session.execute(
            update(Company)
            .where(and_(Company.id == company_id, _editable_condition(actor)))
            .values(is_public=is_public, updated_at=utcnow())
        )
        if result.rowcount == 0:
            session.rollback()
            if session.get(Company, company_id) is None:
                raise NotFoundError("company not found")
            raise FinalizedEntityError()
        session.commit()
        return self._reload(session, company_id)

    def delete_company(self, session: Session, actor: Actor, company_id: uuid.UUID) -> None:
        company = session.get(Company, company_id)
        if company is None:
            raise NotFoundError("company not found")
        if company.finalization_status == FINALIZED and not actor.permissions.allows(
            PermissionFlag.CAN_EDIT_FINALIZED
        ):
            raise FinalizedEntityError()
        session.delete(company)
        session.commit()
        logger.info("company.deleted", extra={"entity_type": self.entity_type, "entity_id": str(company_id)})

    def export_finalized_csv(self, session: Session, actor: Actor) -> str:
        if not actor.permissions.allows(PermissionFlag.CAN_EXPORT_FINALIZED):
            raise AuthorizationError(f"missing permission: {PermissionFlag.CAN_EXPORT_FINALIZED.value}")

        return export_companies_csv(session, finalized_only=True)

    def visibility_filter(self, actor: Actor) -> Any:
        conditions: list[Any] = []
        if not actor.permissions.allows(PermissionFlag.CAN_READ_FINALIZED):
            conditions.append(Company.finalization_status != FINALIZED)
        if actor.role == Role.CONVERTER:
            conditions.append(or_(Company.assigned_converter_id == actor.user_id, Company.is_public.is_(True)))
        elif actor.role == Role.DATA_COLLECTOR:
            conditions.append(
                or_(
                    Company.assigned_data_collector_id == actor.user_id,
                    Company.created_by_id == actor.user_id,
                    Company.is_public.is_(True),
                )
            )
        return and_(Company.id.is_not(None), *conditions)

    def _can_view(self, actor: Actor, company: Company) -> bool:
        if actor.role == Role.CONVERTER:
            return company.is_public or company.assigned_converter_id == actor.user_id
        if actor.role == Role.DATA_COLLECTOR:
            return (
                company.is_public
                or company.assigned_data_collector_id == actor.user_id
                or company.created_by_id == actor.user_id
            )
        return True

    def _ensure_assignees_exist(self, session: Session, values: dict[str, Any]) -> None:
        for field in ("assigned_data_collector_id", "assigned_converter_id"):
            user_id = values.get(field)
            if user_id is not None and session.get(User, user_id) is None:
                raise ValidationError.for_field(field, "user does not exist", "not_found")

    def _reload(self, session: Session, company_id: uuid.UUID) -> Company:
        company = session.get(Company, company_id)
        if company is None:
            raise NotFoundError("company not found")
        session.refresh(company)
        return company


class ContactService:
    entity_type = "contact"

    def __init__(self, companies: CompanyService) -> None:
        self._companies = companies

    def list_for_company(self, session: Session, actor: Actor, company_id: uuid.UUID) -> list[Contact]:
        self._companies.get_company(session, actor, company_id)
        rows = session.scalars(
            select(Contact).where(Contact.company_id == company_id).order_by(Contact.created_at.asc())
        ).all()
        return list(rows)

    def create_contact(self, session: Session, actor: Actor, company_id: uuid.UUID, dto: ContactCreate) -> Contact:
        company = self._companies.get_company(session, actor, company_id)
        _ensure_parent_editable(actor, company)
        contact = Contact(company_id=company.id, created_by_id=actor.user_id, **dto.model_dump())
        session.add(contact)
        session.commit()
        session.refresh(contact)
        return contact

    def update_contact(self, session: Session, actor: Actor, contact_id: uuid.UUID, dto: ContactUpdate) -> Contact:
        contact = self._get(session, contact_id)
        _ensure_parent_editable(actor, session.get(Company, contact.company_id))
        for key, value in dto.model_dump(exclude_unset=True).items():
            setattr(contact, key, value)
        session.commit()
        session.refresh(contact)
        return contact

    def delete_contact(self, session: Session, actor: Actor, contact_id: uuid.UUID) -> None:
        contact = self._get(session, contact_id)
        _ensure_parent_editable(actor, session.get(Company, contact.company_id))
        session.delete(contact)
        session.commit()

    def _get(self, session: Session, contact_id: uuid.UUID) -> Contact:
        contact = session.get(Contact, contact_id)
        if contact is None:
            raise NotFoundError("contact not found")
        return contact


class FollowUpService:
    entity_type = "follow_up"

    def __init__(self, companies: CompanyService) -> None:
        self._companies = companies

    def list_for_company(self, session: Session, actor: Actor, company_id: uuid.UUID) -> list[FollowUp]:
        self._companies.get_company(session, actor, company_id)
        rows = session.scalars(
            select(FollowUp).where(FollowUp.company_id == company_id).order_by(FollowUp.follow_up_date.asc())
        ).all()
        return list(rows)

    def create_follow_up(
        self, session: Session, actor: Actor, company_id: uuid.UUID, dto: FollowUpCreate
    ) -> FollowUp:
        company = self._companies.get_company(session, actor, company_id)
        _ensure_parent_editable(actor, company)
        follow_up = FollowUp(company_id=company.id, created_by_id=actor.user_id, **dto.model_dump())
        session.add(follow_up)
        session.commit()
        session.refresh(follow_up)
        return follow_up

    def update_follow_up(
        self, session: Session, actor: Actor, follow_up_id: uuid.UUID, dto: FollowUpUpdate
    ) -> FollowUp:
        follow_up = self._get(session, follow_up_id)
        _ensure_parent_editable(actor, session.get(Company, follow_up.company_id))
        changes = dto.model_dump(exclude_unset=True)
        contacted = changes.get("contacted_date", follow_up.contacted_date)
        follow_up_date = changes.get("follow_up_date", follow_up.follow_up_date)
        if follow_up_date <= contacted:
            raise ValidationError.for_field(
                "follow_up_date", "follow_up_date must be after contacted_date", "date_order"
            )
        for key, value in changes.items():
            setattr(follow_up, key, value)
        session.commit()
        session.refresh(follow_up)
        return follow_up

    def delete_follow_up(self, session: Session, actor: Actor, follow_up_id: uuid.UUID) -> None:
        follow_up = self._get(session, follow_up_id)
        _ensure_parent_editable(actor, session.get(Company, follow_up.company_id))
        session.delete(follow_up)
        session.commit()

    def _get(self, session: Session, follow_up_id: uuid.UUID) -> FollowUp:
        follow_up = session.get(FollowUp, follow_up_id)
        if follow_up is None:
            raise NotFoundError("follow-up not found")
        return follow_up


def _ensure_parent_editable(actor: Actor, company: Company | None) -> None:
    if company is None:
        raise NotFoundError("company not found")
    if company.finalization_status == FINALIZED and not actor.permissions.allows(PermissionFlag.CAN_EDIT_FINALIZED):
        raise FinalizedEntityError()


def _can_see_all_work(actor: Actor) -> bool:
    return actor.permissions.allows(PermissionFlag.CAN_UPDATE_ALL_TASKS) or actor.permissions.allows(
        PermissionFlag.CAN_ASSIGN_TASKS
    )


class TaskService:
    entity_type = "task"
    worker_fields = frozenset({"status"})

    def __init__(self, notifications: NotificationService = notification_service) -> None:
        self._notifications = notifications

    def list_tasks(
        self,
        session: Session,
        actor: Actor,
        *,
        status: str | None,
        page: int,
        limit: int,
        mine: bool = False,
    ) -> tuple[list[Task], int]:
        stmt = select(Task).where(self.visibility_filter(actor))
        if mine:
            stmt = stmt.where(Task.assigned_to_id == actor.user_id)
        if status:
            stmt = stmt.where(Task.status == status)
        return paginate(session, stmt.order_by(Task.created_at.desc(), Task.id), page, limit)

    def visibility_filter(self, actor: Actor) -> Any:
        if _can_see_all_work(actor):
            return Task.id.is_not(None)
        return Task.assigned_to_id == actor.user_id

    def count_open(self, session: Session, actor: Actor) -> int:
        return (
            session.scalar(
                select(func.count())
                .select_from(Task)
                .where(and_(Task.assigned_to_id == actor.user_id, Task.status != "Completed"))
            )
            or 0
        )

    def get_task(self, session: Session, actor: Actor, task_id: uuid.UUID) -> Task:
        task = session.get(Task, task_id)
        if task is None or (not _can_see_all_work(actor) and task.assigned_to_id != actor.user_id):
            raise NotFoundError("task not found")
        return task

    def create_task(self, session: Session, actor: Actor, dto: TaskCreate) -> Task:
        _ensure_assignable(session, actor, dto.assigned_to_id)
        task = Task(**dto.model_dump(), assigned_by_id=actor.user_id)
        session.add(task)
        session.commit()
        session.refresh(task)
        self._notifications.notify(
            session,
            task.assigned_to_id,
            f"New task assigned: {task.title}",
            type="task_assigned",
            entity_type="task",
            entity_id=task.id,
            email_subject="New task assigned",
        )
        return task

    def update_task(self, session: Session, actor: Actor, task_id: uuid.UUID, dto: TaskUpdate) -> Task:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError("task not found")

        changes = dto.model_dump(exclude_unset=True)
        if not actor.permissions.allows(PermissionFlag.CAN_UPDATE_ALL_TASKS):
            restricted = sorted(set(changes) - self.worker_fields)
            if restricted:
                raise AuthorizationError(f"only status can be updated; not allowed: {', '.join(restricted)}")
        if changes.get("assigned_to_id") is not None and changes["assigned_to_id"] != task.assigned_to_id:
            _ensure_assignable(session, actor, changes["assigned_to_id"])
        for key, value in changes.items():
            setattr(task, key, value)
        session.commit()
        session.refresh(task)
        return task

    def delete_task(self, session: Session, actor: Actor, task_id: uuid.UUID) -> None:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError("task not found")
        session.delete(task)
        session.commit()


class TicketService:
    entity_type = "ticket"
    worker_fields = frozenset({"is_resolved"})

    def __init__(self, notifications: NotificationService = notification_service) -> None:
        self._notifications = notifications

    def list_tickets(
        self,
        session: Session,
        actor: Actor,
        *,
        resolved: bool | None,
        page: int,
        limit: int,
        mine: bool = False,
    ) -> tuple[list[Ticket], int]:
        stmt = select(Ticket).where(self.visibility_filter(actor, mine=mine))
        if resolved is not None:
            stmt = stmt.where(Ticket.is_resolved.is_(resolved))
        return paginate(session, stmt.order_by(Ticket.created_at.desc(), Ticket.id), page, limit)

    def visibility_filter(self, actor: Actor, *, mine: bool = False) -> Any:
        if not mine and actor.permissions.allows(PermissionFlag.CAN_UPDATE_ALL_TASKS):
            return Ticket.id.is_not(None)
        return or_(Ticket.assigned_to_id == actor.user_id, Ticket.raised_by_id == actor.user_id)

    def count_open(self, session: Session, actor: Actor) -> int:
        return (
            session.scalar(
                select(func.count())
                .select_from(Ticket)
                .where(and_(Ticket.assigned_to_id == actor.user_id, Ticket.is_resolved.is_(False)))
            )
            or 0
        )

    def create_ticket(self, session: Session, actor: Actor, dto: TicketCreate) -> Ticket:
        if not actor.can_raise_tickets:
            raise AuthorizationError("ticket raising is disabled for this user")
        if dto.assigned_to_id is not None:
            assignee = session.get(User, dto.assigned_to_id)
            if assignee is None or not assignee.is_active:
                raise ValidationError.for_field("assigned_to_id", "assignee does not exist", "not_found")

        ticket = Ticket(**dto.model_dump(), raised_by_id=actor.user_id)
        session.add(ticket)
        session.commit()
        session.refresh(ticket)
        self._notifications.notify(
            session,
            ticket.assigned_to_id,
            f"New ticket: {ticket.title}",
            type="ticket_assigned",
            entity_type="ticket",
            entity_id=ticket.id,
        )
        return ticket

    def update_ticket(self, session: Session, actor: Actor, ticket_id: uuid.UUID, dto: TicketUpdate) -> Ticket:
        ticket = session.get(Ticket, ticket_id)
        if ticket is None:
            raise NotFoundError("ticket not found")

        changes = dto.model_dump(exclude_unset=True)
        if not actor.permissions.allows(PermissionFlag.CAN_UPDATE_ALL_TASKS):
            restricted = sorted(set(changes) - self.worker_fields)
            if restricted:
                raise AuthorizationError(f"only is_resolved can be updated; not allowed: {', '.join(restricted)}")
        if changes.get("assigned_to_id") is not None and changes["assigned_to_id"] != ticket.assigned_to_id:
            _ensure_assignable(session, actor, changes["assigned_to_id"])
        for key, value in changes.items():
            setattr(ticket, key, value)
        session.commit()
        session.refresh(ticket)

        if changes.get("is_resolved") and ticket.raised_by_id != actor.user_id:
            self._notifications.notify(
                session,
                ticket.raised_by_id,
                f"Ticket resolved: {ticket.title}",
                type="ticket_resolved",
                entity_type="ticket",
                entity_id=ticket.id,
            )
        return ticket

    def delete_ticket(self, session: Session, actor: Actor, ticket_id: uuid.UUID) -> None:
        ticket = session.get(Ticket, ticket_id)
        if ticket is None:
            raise NotFoundError("ticket not found")
        session.delete(ticket)
        session.commit()


def _ensure_assignable(session: Session, actor: Actor, assignee_id: uuid.UUID) -> User:
    assignee = session.get(User, assignee_id)
    if assignee is None or not assignee.is_active:
        raise ValidationError.for_field("assigned_to_id", "assignee does not exist", "not_found")
    if not can_assign(actor.role, assignee.role):
        raise AuthorizationError("cannot assign to this role")
    return assignee


_COMMENT_TARGETS: dict[str, type[Any]] = {"company": Company, "task": Task, "ticket": Ticket}


class CommentService:
    entity_type = "comment"

    def list_comments(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> list[Comment]:
        rows = session.scalars(
            select(Comment)
            .where(and_(Comment.entity_type == entity_type, Comment.entity_id == entity_id))
            .order_by(Comment.created_at.asc())
        ).all()
        return list(rows)

    def create_comment(self, session: Session, actor: Actor, dto: CommentCreate) -> Comment:
        target = _COMMENT_TARGETS[dto.entity_type]
        if session.get(target, dto.entity_id) is None:
            raise NotFoundError(f"{dto.entity_type} not found")
        comment = Comment(entity_type=dto.entity_type, entity_id=dto.entity_id, author_id=actor.user_id, body=dto.body)
        session.add(comment)
        session.commit()
        session.refresh(comment)
        return comment

    def update_comment(self, session: Session, actor: Actor, comment_id: uuid.UUID, dto: CommentUpdate) -> Comment:
        comment = session.get(Comment, comment_id)
        if comment is None:
            raise NotFoundError("comment not found")
        comment.body = dto.body
        session.commit()
        session.refresh(comment)
        return comment

    def delete_comment(self, session: Session, actor: Actor, comment_id: uuid.UUID) -> None:
        result = session.execute(delete(Comment).where(Comment.id == comment_id))
        if result.rowcount == 0:
            session.rollback()
            raise NotFoundError("comment not found")
        session.commit()


company_service = CompanyService()
contact_service = ContactService(company_service)
follow_up_service = FollowUpService(company_service)
task_service = TaskService()
ticket_service = TicketService()
comment_service = CommentService()
