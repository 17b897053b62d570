"""Review workflows for changes a user may not apply directly.

Follow-up deletion requests are decided by managers; profile change requests
by administrators. Both move ``pending`` -> ``approved``/``rejected`` through a
conditional update, so a request is decided exactly once.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, case, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crmcore.crm.models import FollowUp, FollowUpDeletionRequest, ProfileChangeRequest, User
from crmcore.crm.schemas import DeletionRequestCreate, DeletionRequestReview, ProfileChangeCreate
from crmcore.crm.service import CompanyService, company_service, paginate
from crmcore.notifications import NotificationService, notification_service
from crmcore.security.context import Actor
from crmcore.security.errors import ConflictError, NotFoundError, ValidationError
from crmcore.security.permissions import MANAGERS


logger = logging.getLogger("app.crm.requests")
tracer = trace.get_tracer("app.crm.requests")

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

PROFILE_FIELDS = ("full_name", "email", "region")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FollowUpDeletionService:
    entity_type = "follow_up_deletion_request"

    def __init__(
        self,
        companies: CompanyService = company_service,
        notifications: NotificationService = notification_service,
    ) -> None:
        self._companies = companies
        self._notifications = notifications

    def list_requests(
        self, session: Session, *, status: str | None, page: int, limit: int
    ) -> tuple[list[FollowUpDeletionRequest], int]:
        stmt = select(FollowUpDeletionRequest)
        if status:
            stmt = stmt.where(FollowUpDeletionRequest.status == status)
        pending_first = case((FollowUpDeletionRequest.status == PENDING, 0), else_=1)
        stmt = stmt.order_by(pending_first, FollowUpDeletionRequest.created_at.desc(), FollowUpDeletionRequest.id)
        return paginate(session, stmt, page, limit)

    def list_mine(self, session: Session, actor: Actor) -> list[FollowUpDeletionRequest]:
        rows = session.scalars(
            select(FollowUpDeletionRequest)
            .where(FollowUpDeletionRequest.requested_by_id == actor.user_id)
            .order_by(FollowUpDeletionRequest.created_at.desc())
        ).all()
        return list(rows)

    def create_request(self, session: Session, actor: Actor, dto: DeletionRequestCreate) -> FollowUpDeletionRequest:
        follow_up = session.get(FollowUp, dto.follow_up_id)
        if follow_up is None:
            raise NotFoundError("follow-up not found")
        self._companies.get_company(session, actor, follow_up.company_id)

        existing = session.scalar(
            select(FollowUpDeletionRequest.id).where(
                and_(FollowUpDeletionRequest.follow_up_id == follow_up.id, FollowUpDeletionRequest.status == PENDING)
            )
        )
        if existing is not None:
            raise ConflictError("a deletion request for this follow-up is already pending")

        request = FollowUpDeletionRequest(
            follow_up_id=follow_up.id,
            company_id=follow_up.company_id,
            requested_by_id=actor.user_id,
            reason=dto.reason,
        )
        session.add(request)
        session.commit()
        session.refresh(request)
        logger.info("follow_up.deletion_requested", extra={"entity_type": self.entity_type, "entity_id": str(request.id)})

        reviewers = session.scalars(
            select(User.id).where(
                User.is_active.is_(True),
                User.role.in_([role.value for role in MANAGERS]),
                User.id != actor.user_id,
            )
        ).all()
        for reviewer_id in reviewers:
            self._notifications.notify(
                session,
                reviewer_id,
                "New follow-up deletion request awaiting review.",
                type="deletion_request",
                entity_type=self.entity_type,
                entity_id=request.id,
            )
        return request

    def review(
        self, session: Session, actor: Actor, request_id: uuid.UUID, dto: DeletionRequestReview
    ) -> FollowUpDeletionRequest:
        decision = APPROVED if dto.action == "approve" else REJECTED
        now = utcnow()
        with tracer.start_as_current_span("follow_up_deletion.review") as span:
            span.set_attribute("request.id", str(request_id))
            span.set_attribute("request.decision", decision)
            result = session.execute(
                update(FollowUpDeletionRequest)
                .where(and_(FollowUpDeletionRequest.id == request_id, FollowUpDeletionRequest.status == PENDING))
                .values(
                    status=decision,
                    reviewed_by_id=actor.user_id,
                    reviewed_at=now,
                    rejection_reason=dto.rejection_reason if decision == REJECTED else None,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                session.rollback()
                if session.get(FollowUpDeletionRequest, request_id) is None:
                    raise NotFoundError("deletion request not found")
                raise ConflictError("deletion request has already been reviewed")

            request = session.get(FollowUpDeletionRequest, request_id)
            if decision == APPROVED and request.follow_up_id is not None:
                session.execute(delete(FollowUp).where(FollowUp.id == request.follow_up_id))
            session.commit()

        session.refresh(request)
        logger.info(
            f"follow_up.deletion_{decision}",
            extra={"entity_type": self.entity_type, "entity_id": str(request_id), "role": actor.role.value},
        )
        if decision == APPROVED:
            message = "Your follow-up deletion request was approved."
        else:
            suffix = f": {dto.rejection_reason}" if dto.rejection_reason else "."
            message = f"Your follow-up deletion request was rejected{suffix}"
        self._notifications.notify(
            session,
            request.requested_by_id,
            message,
            type=f"deletion_request_{decision}",
            entity_type=self.entity_type,
            entity_id=request.id,
        )
        return request

    def cancel(self, session: Session, actor: Actor, request_id: uuid.UUID) -> None:
        request = session.get(FollowUpDeletionRequest, request_id)
        if request is None or request.requested_by_id != actor.user_id:
            raise NotFoundError("deletion request not found")
        result = session.execute(
            delete(FollowUpDeletionRequest).where(
                and_(FollowUpDeletionRequest.id == request_id, FollowUpDeletionRequest.status == PENDING)
            )
        )
        if result.rowcount == 0:
            session.rollback()
            raise ConflictError("cannot cancel a request that has already been reviewed")
        session.commit()


class ProfileChangeService:
    entity_type = "profile_change_request"

    def __init__(self, notifications: NotificationService = notification_service) -> None:
        self._notifications = notifications

    def list_mine(self, session: Session, actor: Actor) -> list[ProfileChangeRequest]:
        rows = session.scalars(
            select(ProfileChangeRequest)
            .where(ProfileChangeRequest.user_id == actor.user_id)
            .order_by(ProfileChangeRequest.requested_at.desc())
        ).all()
        return list(rows)

    def list_requests(
        self, session: Session, *, status: str | None, page: int, limit: int
    ) -> tuple[list[ProfileChangeRequest], int]:
        stmt = select(ProfileChangeRequest)
        if status:
            stmt = stmt.where(ProfileChangeRequest.status == status)
        order = ProfileChangeRequest.requested_at.asc() if status == PENDING else ProfileChangeRequest.requested_at.desc()
        return paginate(session, stmt.order_by(order, ProfileChangeRequest.id), page, limit)

    def create_request(self, session: Session, actor: Actor, dto: ProfileChangeCreate) -> ProfileChangeRequest:
        user = session.get(User, actor.user_id)
        if user is None:
            raise NotFoundError("user not found")

        changes = dto.model_dump(exclude_unset=True, mode="json")
        if changes.get("email"):
            changes["email"] = changes["email"].lower()
            taken = session.scalar(select(User.id).where(User.email == changes["email"], User.id != user.id))
            if taken is not None:
                raise ValidationError.for_field("email", "email already registered", "duplicate")

        pending = session.scalar(
            select(ProfileChangeRequest.id).where(
                and_(ProfileChangeRequest.user_id == user.id, ProfileChangeRequest.status == PENDING)
            )
        )
        if pending is not None:
            raise ConflictError("a profile change request is already pending")

        request = ProfileChangeRequest(
            user_id=user.id,
            requested_changes=changes,
            current_values={name: getattr(user, name) for name in PROFILE_FIELDS},
        )
        session.add(request)
        session.commit()
        session.refresh(request)
        logger.info("profile.change_requested", extra={"entity_type": self.entity_type, "entity_id": str(request.id)})
        return request

    def cancel(self, session: Session, actor: Actor, request_id: uuid.UUID) -> None:
        result = session.execute(
            delete(ProfileChangeRequest).where(
                and_(
                    ProfileChangeRequest.id == request_id,
                    ProfileChangeRequest.user_id == actor.user_id,
                    ProfileChangeRequest.status == PENDING,
                )
            )
        )
        if result.rowcount == 0:
            session.rollback()
            raise NotFoundError("request not found or cannot be cancelled")
        session.commit()

    def approve(self, session: Session, actor: Actor, request_id: uuid.UUID) -> ProfileChangeRequest:
        request = self._decide(session, actor, request_id, APPROVED)
        user = session.get(User, request.user_id)
        if user is None:
            session.rollback()
            raise NotFoundError("user not found")
        for name, value in request.requested_changes.items():
            if name in PROFILE_FIELDS:
                setattr(user, name, value)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("email already registered") from exc

        session.refresh(request)
        logger.info(
            "profile.change_approved",
            extra={"entity_type": self.entity_type, "entity_id": str(request_id), "role": actor.role.value},
        )
        self._notify(session, request, "Your profile change request was approved.")
        return request

    def reject(self, session: Session, actor: Actor, request_id: uuid.UUID, reason: str | None) -> ProfileChangeRequest:
        request = self._decide(session, actor, request_id, REJECTED, rejection_reason=reason)
        session.commit()
        session.refresh(request)
        logger.info(
            "profile.change_rejected",
            extra={"entity_type": self.entity_type, "entity_id": str(request_id), "role": actor.role.value},
        )
        suffix = f": {reason}" if reason else "."
        self._notify(session, request, f"Your profile change request was rejected{suffix}")
        return request

    def _decide(
        self, session: Session, actor: Actor, request_id: uuid.UUID, decision: str, **values: Any
    ) -> ProfileChangeRequest:
        result = session.execute(
            update(ProfileChangeRequest)
            .where(and_(ProfileChangeRequest.id == request_id, ProfileChangeRequest.status == PENDING))
            .values(status=decision, reviewed_by_id=actor.user_id, reviewed_at=utcnow(), **values)
        )
        if result.rowcount == 0:
            session.rollback()
            raise NotFoundError("request not found or already processed")
        return session.get(ProfileChangeRequest, request_id)

    def _notify(self, session: Session, request: ProfileChangeRequest, message: str) -> None:
        self._notifications.notify(
            session,
            request.user_id,
            message,
            type=f"profile_change_{request.status}",
            entity_type=self.entity_type,
            entity_id=request.id,
            email_subject="Profile change request",
        )


follow_up_deletion_service = FollowUpDeletionService()
profile_change_service = ProfileChangeService()
