"""Company finalization state machine.

``Pending`` is the initial state and ``Finalized`` is terminal unless explicitly
reversed. Both transitions are conditional updates keyed on the current status,
so concurrent callers cannot both succeed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from opentelemetry import trace
from sqlalchemy import and_, update
from sqlalchemy.orm import Session

from crmcore.crm.models import Company
from crmcore.metrics import observe_finalization_transition
from crmcore.security.context import Actor
from crmcore.security.errors import AuthorizationError, ConflictError, NotFoundError
from crmcore.security.permissions import PermissionFlag


logger = logging.getLogger("app.crm.finalization")
tracer = trace.get_tracer("app.crm.finalization")

PENDING = "Pending"
FINALIZED = "Finalized"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FinalizationService:
    entity_type = "company"

    def finalize(self, session: Session, company_id: uuid.UUID, actor: Actor) -> Company:
        self._require_permission(actor)
        now = utcnow()
        with tracer.start_as_current_span("company.finalize") as span:
            span.set_attribute("company.id", str(company_id))
            result = session.execute(
                update(Company)
                .where(and_(Company.id == company_id, Company.finalization_status == PENDING))
                .values(
                    finalization_status=FINALIZED,
                    finalized_by_id=actor.user_id,
                    finalized_at=now,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                session.rollback()
                self._raise_for_missed_transition(session, company_id, expected=PENDING)
            session.commit()

        observe_finalization_transition("finalize")
        logger.info(
            "company.finalized",
            extra={"entity_type": self.entity_type, "entity_id": str(company_id), "role": actor.role.value},
        )
        return self._reload(session, company_id)

    def unfinalize(self, session: Session, company_id: uuid.UUID, actor: Actor) -> Company:
        self._require_permission(actor)
        with tracer.start_as_current_span("company.unfinalize") as span:
            span.set_attribute("company.id", str(company_id))
            result = session.execute(
                update(Company)
                .where(and_(Company.id == company_id, Company.finalization_status == FINALIZED))
                .values(
                    finalization_status=PENDING,
                    finalized_by_id=None,
                    finalized_at=None,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount == 0:
                session.rollback()
                self._raise_for_missed_transition(session, company_id, expected=FINALIZED)
            session.commit()

        observe_finalization_transition("unfinalize")
        logger.info(
            "company.unfinalized",
            extra={"entity_type": self.entity_type, "entity_id": str(company_id), "role": actor.role.value},
        )
        return self._reload(session, company_id)

    def _require_permission(self, actor: Actor) -> None:
        if not actor.permissions.allows(PermissionFlag.CAN_FINALIZE):
            raise AuthorizationError(f"missing permission: {PermissionFlag.CAN_FINALIZE.value}")

    def _raise_for_missed_transition(self, session: Session, company_id: uuid.UUID, *, expected: str) -> None:
        if session.get(Company, company_id) is None:
            raise NotFoundError("company not found")
        if expected == PENDING:
            raise ConflictError("company is already finalized")
        raise ConflictError("company is not finalized")

    def _reload(self, session: Session, company_id: uuid.UUID) -> Company:
        company = session.get(Company, company_id)
        if company is None:
            raise NotFoundError("company not found")
        session.refresh(company)
        return company


finalization_service = FinalizationService()
