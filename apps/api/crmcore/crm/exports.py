"""CSV exports of companies, tasks and tickets."""

from __future__ import annotations

import csv
import io
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session, aliased

from crmcore.crm.finalization import FINALIZED
from crmcore.crm.models import Company, Task, Ticket, User


tracer = trace.get_tracer("app.crm.exports")

COMPANY_FIELDS = [
    "id",
    "name",
    "website",
    "phone",
    "email",
    "address",
    "industry",
    "contact_person",
    "status",
    "conversion_status",
    "finalization_status",
    "finalized_by_id",
    "finalized_at",
    "created_at",
]
TASK_FIELDS = [
    "id",
    "title",
    "description",
    "status",
    "task_type",
    "deadline",
    "assigned_to",
    "company_name",
    "created_at",
]
TICKET_FIELDS = [
    "id",
    "title",
    "description",
    "is_resolved",
    "raised_by",
    "assigned_to",
    "company_name",
    "created_at",
]


def csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def write_csv(fieldnames: Sequence[str], rows: Iterable[Mapping[str, Any]]) -> str:
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=fieldnames, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({name: csv_value(row.get(name)) for name in fieldnames})
    return output.getvalue()


def companies_csv(companies: Iterable[Company], fieldnames: Sequence[str] = COMPANY_FIELDS) -> str:
    return write_csv(fieldnames, ({name: getattr(company, name) for name in fieldnames} for company in companies))


def export_companies_csv(session: Session, *, finalized_only: bool = False) -> str:
    stmt = select(Company)
    if finalized_only:
        stmt = stmt.where(Company.finalization_status == FINALIZED).order_by(Company.finalized_at.desc())
    else:
        stmt = stmt.order_by(Company.created_at.desc())
    with tracer.start_as_current_span("export.companies") as span:
        rows = session.scalars(stmt).all()
        span.set_attribute("export.rows", len(rows))
        return companies_csv(rows)


def export_tasks_csv(session: Session) -> str:
    assignee = aliased(User)
    stmt = (
        select(Task, assignee.full_name, Company.name)
        .outerjoin(assignee, Task.assigned_to_id == assignee.id)
        .outerjoin(Company, Task.company_id == Company.id)
        .order_by(Task.created_at.desc())
    )
    with tracer.start_as_current_span("export.tasks") as span:
        rows = session.execute(stmt).all()
        span.set_attribute("export.rows", len(rows))
        return write_csv(
            TASK_FIELDS,
            (
                {
                    "id": task.id,
                    "title": task.title,
                    "description": task.description,
                    "status": task.status,
                    "task_type": task.task_type,
                    "deadline": task.deadline,
                    "assigned_to": assigned_to,
                    "company_name": company_name,
                    "created_at": task.created_at,
                }
                for task, assigned_to, company_name in rows
            ),
        )


def export_tickets_csv(session: Session) -> str:
    raiser = aliased(User)
    assignee = aliased(User)
    stmt = (
        select(Ticket, raiser.full_name, assignee.full_name, Company.name)
        .outerjoin(raiser, Ticket.raised_by_id == raiser.id)
        .outerjoin(assignee, Ticket.assigned_to_id == assignee.id)
        .outerjoin(Company, Ticket.company_id == Company.id)
        .order_by(Ticket.created_at.desc())
    )
    with tracer.start_as_current_span("export.tickets") as span:
        rows = session.execute(stmt).all()
        span.set_attribute("export.rows", len(rows))
        return write_csv(
            TICKET_FIELDS,
            (
                {
                    "id": ticket.id,
                    "title": ticket.title,
                    "description": ticket.description,
                    "is_resolved": ticket.is_resolved,
                    "raised_by": raised_by,
                    "assigned_to": assigned_to,
                    "company_name": company_name,
                    "created_at": ticket.created_at,
                }
                for ticket, raised_by, assigned_to, company_name in rows
            ),
        )
