from __future__ import annotations

from typing import Any

from opentelemetry import trace
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from crmcore.crm.models import Company, Contact, Task, Ticket, User
from crmcore.crm.schemas import CompanyRead, ContactRead, SearchResults, TaskRead, TicketRead, UserRead
from crmcore.crm.service import (
    CompanyService,
    TaskService,
    TicketService,
    company_service,
    task_service,
    ticket_service,
)
from crmcore.security.context import Actor
from crmcore.security.permissions import USER_MANAGERS, PermissionFlag


tracer = trace.get_tracer("app.crm.search")

MIN_TERM_LENGTH = 2
RESULTS_PER_KIND = 10


def _matches(term: str, *columns: Any) -> Any:
    return or_(*(column.icontains(term, autoescape=True) for column in columns))


class SearchService:
    """Search across entities, each kind filtered by the caller's list visibility."""

    def __init__(
        self,
        companies: CompanyService = company_service,
        tasks: TaskService = task_service,
        tickets: TicketService = ticket_service,
    ) -> None:
        self._companies = companies
        self._tasks = tasks
        self._tickets = tickets

    def search(self, session: Session, actor: Actor, term: str) -> SearchResults:
        term = term.strip()
        if len(term) < MIN_TERM_LENGTH:
            return SearchResults()

        with tracer.start_as_current_span("search.global") as span:
            span.set_attribute("search.term_length", len(term))
            visible_companies = self._companies.visibility_filter(actor)
            companies = self._fetch(
                session,
                select(Company)
                .where(visible_companies, _matches(term, Company.name, Company.email, Company.website))
                .order_by(Company.name),
            )
            contacts = self._fetch(
                session,
                select(Contact)
                .join(Company, Contact.company_id == Company.id)
                .where(visible_companies, _matches(term, Contact.name, Contact.email, Contact.phone))
                .order_by(Contact.name),
            )
            tasks = self._fetch(
                session,
                select(Task)
                .where(self._tasks.visibility_filter(actor), _matches(term, Task.title, Task.description))
                .order_by(Task.created_at.desc()),
            )
            tickets = self._fetch(
                session,
                select(Ticket)
                .where(self._tickets.visibility_filter(actor), _matches(term, Ticket.title, Ticket.description))
                .order_by(Ticket.created_at.desc()),
            )
            users: list[Any] = []
            if actor.role in USER_MANAGERS and actor.permissions.allows(PermissionFlag.CAN_MANAGE_USERS):
                users = self._fetch(
                    session,
                    select(User).where(_matches(term, User.full_name, User.email)).order_by(User.full_name),
                )

        return SearchResults(
            companies=[CompanyRead.model_validate(row) for row in companies],
            contacts=[ContactRead.model_validate(row) for row in contacts],
            tasks=[TaskRead.model_validate(row) for row in tasks],
            tickets=[TicketRead.model_validate(row) for row in tickets],
            users=[UserRead.model_validate(row) for row in users],
        )

    def _fetch(self, session: Session, stmt: Any) -> list[Any]:
        return list(session.scalars(stmt.limit(RESULTS_PER_KIND)).all())


search_service = SearchService()
