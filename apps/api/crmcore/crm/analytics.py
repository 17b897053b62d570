from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry import trace
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crmcore.crm.models import Company, FollowUpDeletionRequest, Task, Ticket, User
from crmcore.crm.requests import PENDING
from crmcore.crm.schemas import ActivityPoint, CompanyStats, DashboardStats, LabelCount, UserWorkload, WorkStats


tracer = trace.get_tracer("app.crm.analytics")

TOP_USERS = 10


def _count(session: Session, model: type[Any], *conditions: Any) -> int:
    return session.scalar(select(func.count()).select_from(model).where(*conditions)) or 0


def _grouped(session: Session, column: Any) -> list[LabelCount]:
    rows = session.execute(
        select(column, func.count()).where(column.is_not(None)).group_by(column).order_by(column)
    ).all()
    return [LabelCount(label=str(label), count=count) for label, count in rows]


def _workload(session: Session, model: type[Any]) -> list[UserWorkload]:
    count = func.count(model.id)
    rows = session.execute(
        select(User.id, User.full_name, count)
        .outerjoin(model, model.assigned_to_id == User.id)
        .where(User.is_active.is_(True))
        .group_by(User.id, User.full_name)
        .order_by(count.desc(), User.full_name)
        .limit(TOP_USERS)
    ).all()
    return [UserWorkload(user_id=user_id, full_name=name, count=total) for user_id, name, total in rows]


class AnalyticsService:
    """Aggregate counts for the manager dashboard."""

    def dashboard(self, session: Session) -> DashboardStats:
        with tracer.start_as_current_span("analytics.dashboard"):
            return DashboardStats(
                companies=_count(session, Company),
                tasks=_count(session, Task),
                tickets=_count(session, Ticket),
                users=_count(session, User, User.is_active.is_(True)),
                pending_deletion_requests=_count(
                    session, FollowUpDeletionRequest, FollowUpDeletionRequest.status == PENDING
                ),
            )

    def company_stats(self, session: Session) -> CompanyStats:
        with tracer.start_as_current_span("analytics.companies"):
            return CompanyStats(
                by_status=_grouped(session, Company.status),
                by_conversion=_grouped(session, Company.conversion_status),
                by_finalization=_grouped(session, Company.finalization_status),
            )

    def task_stats(self, session: Session) -> WorkStats:
        with tracer.start_as_current_span("analytics.tasks"):
            return WorkStats(
                by_status=_grouped(session, Task.status),
                by_user=_workload(session, Task),
            )

    def ticket_stats(self, session: Session) -> WorkStats:
        with tracer.start_as_current_span("analytics.tickets"):
            rows = session.execute(select(Ticket.is_resolved, func.count()).group_by(Ticket.is_resolved)).all()
            by_status = [LabelCount(label="Resolved" if resolved else "Open", count=count) for resolved, count in rows]
            return WorkStats(
                by_status=sorted(by_status, key=lambda item: item.label),
                by_user=_workload(session, Ticket),
            )

    def activity(self, session: Session, days: int) -> list[ActivityPoint]:
        """Daily creation counts for companies and tasks over the last ``days`` days, newest first."""
        since = datetime.now(timezone.utc) - timedelta(days=days)
        points: list[ActivityPoint] = []
        with tracer.start_as_current_span("analytics.activity") as span:
            span.set_attribute("analytics.days", days)
            for kind, model in (("company", Company), ("task", Task)):
                day = func.date(model.created_at)
                rows = session.execute(
                    select(day, func.count()).where(model.created_at >= since).group_by(day)
                ).all()
                points.extend(ActivityPoint(day=value, type=kind, count=count) for value, count in rows)
        return sorted(points, key=lambda point: (point.day, point.type), reverse=True)


analytics_service = AnalyticsService()
