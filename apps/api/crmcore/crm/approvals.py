from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from crmcore.crm.finalization import PENDING, FinalizationService, finalization_service
from crmcore.crm.models import Company
from crmcore.crm.schemas import (
    BulkFailure,
    BulkResult,
    CompanyImportRecord,
    FieldError,
    ImportRecordError,
    ImportResult,
)
from crmcore.metrics import observe_bulk_action
from crmcore.notifications import NotificationService, notification_service
from crmcore.security.context import Actor
from crmcore.security.errors import AppError, AuthorizationError
from crmcore.security.permissions import READ_ONLY_WITH_COMMENTS, PermissionFlag, Role


logger = logging.getLogger("app.crm.approvals")
tracer = trace.get_tracer("app.crm.approvals")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def field_errors(exc: PydanticValidationError) -> list[FieldError]:
    errors: list[FieldError] = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        errors.append(
            FieldError(
                field=".".join(location) or "body",
                message=str(error.get("msg", "invalid value")),
                code=str(error.get("type", "invalid")),
            )
        )
    return errors


class ApprovalService:
    """Approval queue plus bulk approve/reject/import with per-item outcomes."""

    def __init__(
        self,
        finalization: FinalizationService = finalization_service,
        notifications: NotificationService = notification_service,
    ) -> None:
        self._finalization = finalization
        self._notifications = notifications

    def queue(self, session: Session, actor: Actor, *, page: int, limit: int) -> tuple[list[Company], int]:
        conditions: list[Any] = [Company.finalization_status == PENDING]
        if actor.role == Role.CONVERTER:
            conditions.append(or_(Company.assigned_converter_id == actor.user_id, Company.is_public.is_(True)))
        elif actor.role not in {Role.ADMIN, Role.MANAGER} and actor.role not in READ_ONLY_WITH_COMMENTS:
            return [], 0

        total = session.scalar(select(func.count()).select_from(Company).where(and_(*conditions))) or 0
        rows = session.scalars(
            select(Company)
            .where(and_(*conditions))
            .order_by(Company.created_at.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return list(rows), total

    def bulk_approve(self, session: Session, company_ids: list[uuid.UUID], actor: Actor) -> BulkResult:
        started = time.perf_counter()
        updated = 0
        failed: list[BulkFailure] = []
        with tracer.start_as_current_span("companies.bulk_approve") as span:
            span.set_attribute("bulk.size", len(company_ids))
            for company_id in dict.fromkeys(company_ids):
                try:
                    company = self._finalization.finalize(session, company_id, actor)
                except AppError as exc:
                    session.rollback()
                    failed.append(BulkFailure(id=company_id, reason=exc.message))
                    continue
                updated += 1
                self._notify_assignees(session, company, "approved")
            span.set_attribute("bulk.updated", updated)

        self._observe("bulk_approve", updated, failed, started)
        return BulkResult(updated=updated, failed=failed)

    def bulk_reject(self, session: Session, company_ids: list[uuid.UUID], actor: Actor) -> BulkResult:
        """Record a rejection decision on pending companies; their status stays ``Pending``."""
        if not actor.permissions.allows(PermissionFlag.CAN_FINALIZE):
            raise AuthorizationError(f"missing permission: {PermissionFlag.CAN_FINALIZE.value}")

        started = time.perf_counter()
        updated = 0
        failed: list[BulkFailure] = []
        with tracer.start_as_current_span("companies.bulk_reject") as span:
            span.set_attribute("bulk.size", len(company_ids))
            for company_id in dict.fromkeys(company_ids):
                now = utcnow()
                result = session.execute(
                    update(Company)
                    .where(and_(Company.id == company_id, Company.finalization_status == PENDING))
                    .values(review_decision="rejected", reviewed_by_id=actor.user_id, reviewed_at=now, updated_at=now)
                )
                if result.rowcount == 0:
                    session.rollback()
                    existing = session.get(Company, company_id)
                    reason = "company not found" if existing is None else f"company is {existing.finalization_status}"
                    failed.append(BulkFailure(id=company_id, reason=reason))
                    continue
                session.commit()
                updated += 1
                company = session.get(Company, company_id)
                if company is not None:
                    self._notify_assignees(session, company, "rejected")
            span.set_attribute("bulk.updated", updated)

        self._observe("bulk_reject", updated, failed, started)
        return BulkResult(updated=updated, failed=failed)

    def bulk_import(self, session: Session, records: list[dict[str, Any]], actor: Actor) -> ImportResult:
        started = time.perf_counter()
        count = 0
        errors: list[ImportRecordError] = []
        with tracer.start_as_current_span("companies.bulk_import") as span:
            span.set_attribute("bulk.size", len(records))
            for index, raw in enumerate(records):
                name = raw.get("name") if isinstance(raw, dict) else None
                try:
                    record = CompanyImportRecord.model_validate(raw)
                except PydanticValidationError as exc:
                    errors.append(ImportRecordError(index=index, name=_as_name(name), errors=field_errors(exc)))
                    continue

                try:
                    session.add(Company(**company_values(record), created_by_id=actor.user_id))
                    session.commit()
                except Exception as exc:
                    session.rollback()
                    logger.warning("company.import_failed", extra={"error": str(exc), "status": "failed"})
                    errors.append(
                        ImportRecordError(
                            index=index,
                            name=record.name,
                            errors=[FieldError(field="record", message="could not be stored", code="store_failed")],
                        )
                    )
                    continue
                count += 1
            span.set_attribute("bulk.updated", count)

        observe_bulk_action("bulk_import", count, len(errors), time.perf_counter() - started)
        logger.info("companies.imported", extra={"updated": count, "failed": len(errors)})
        return ImportResult(count=count, errors=errors)

    def _notify_assignees(self, session: Session, company: Company, decision: str) -> None:
        message = f"Company '{company.name}' was {decision}."
        for user_id in dict.fromkeys([company.assigned_data_collector_id, company.assigned_converter_id]):
            self._notifications.notify(
                session,
                user_id,
                message,
                type=f"company_{decision}",
                entity_type="company",
                entity_id=company.id,
                email_subject=f"Company {decision}",
            )

    def _observe(self, operation: str, updated: int, failed: list[BulkFailure], started: float) -> None:
        observe_bulk_action(operation, updated, len(failed), time.perf_counter() - started)
        logger.info(f"companies.{operation}", extra={"updated": updated, "failed": len(failed)})


def company_values(dto: Any) -> dict[str, Any]:
    values = dto.model_dump(exclude_unset=True)
    for key in ("status", "conversion_status", "is_public", "custom_fields"):
        if key in values and values[key] is None:
            del values[key]
    if values.get("website") is not None:
        values["website"] = str(values["website"])
    return values


def _as_name(value: Any) -> str | None:
    return value if isinstance(value, str) else None


approval_service = ApprovalService()
