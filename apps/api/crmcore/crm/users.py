from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crmcore.crm.models import User
from crmcore.crm.schemas import UserCreate, UserUpdate
from crmcore.crm.service import paginate
from crmcore.security.context import Actor
from crmcore.security.errors import AuthorizationError, ConflictError, NotFoundError
from crmcore.security.hierarchy import assignable_roles, assignable_users, can_assign
from crmcore.security.permissions import Role


logger = logging.getLogger("app.security")


class UserService:
    entity_type = "user"

    def list_assignable(self, session: Session, actor: Actor) -> list[User]:
        allowed = assignable_roles(actor.role)
        if not allowed:
            return []
        rows = session.scalars(
            select(User)
            .where(User.is_active.is_(True), User.role.in_([role.value for role in allowed]))
            .order_by(User.full_name.asc())
        ).all()
        return assignable_users(rows, actor.role)

    def list_users(
        self, session: Session, *, role: str | None, search: str | None, page: int, limit: int
    ) -> tuple[list[User], int]:
        stmt = select(User)
        if role:
            stmt = stmt.where(User.role == role)
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(func.lower(User.full_name).like(pattern) | func.lower(User.email).like(pattern))
        return paginate(session, stmt.order_by(User.created_at.desc(), User.id), page, limit)

    def get_user(self, session: Session, user_id: uuid.UUID) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def create_user(self, session: Session, actor: Actor, dto: UserCreate) -> User:
        self._ensure_may_grant(actor, dto.role)
        user = User(
            email=dto.email.lower(),
            full_name=dto.full_name,
            role=dto.role.value,
            region=dto.region,
            can_raise_tickets=dto.can_raise_tickets,
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("email already registered") from exc
        session.refresh(user)
        logger.info("user.created", extra={"entity_type": self.entity_type, "entity_id": str(user.id), "role": user.role})
        return user

    def update_user(self, session: Session, actor: Actor, user_id: uuid.UUID, dto: UserUpdate) -> User:
        user = self.get_user(session, user_id)
        changes = dto.model_dump(exclude_unset=True)
        if actor.role != Role.ADMIN and user.id != actor.user_id and not can_assign(actor.role, user.role):
            raise AuthorizationError("cannot manage users with this role")

        role = changes.pop("role", None)
        if role is not None and role.value != user.role:
            if user.id == actor.user_id:
                raise AuthorizationError("cannot change your own role")
            self._ensure_may_grant(actor, role)
            user.role = role.value
            logger.info(
                "user.role_changed",
                extra={"entity_type": self.entity_type, "entity_id": str(user.id), "role": role.value},
            )
        for key, value in changes.items():
            setattr(user, key, value)
        session.commit()
        session.refresh(user)
        return user

    def set_ticket_permission(self, session: Session, actor: Actor, user_id: uuid.UUID, enabled: bool) -> User:
        user = self.get_user(session, user_id)
        if actor.role != Role.ADMIN and not can_assign(actor.role, user.role):
            raise AuthorizationError("cannot manage users with this role")
        user.can_raise_tickets = enabled
        session.commit()
        session.refresh(user)
        return user

    def delete_user(self, session: Session, actor: Actor, user_id: uuid.UUID) -> None:
        if actor.role != Role.ADMIN:
            raise AuthorizationError("only administrators can delete users")
        if user_id == actor.user_id:
            raise ConflictError("cannot delete your own account")
        user = self.get_user(session, user_id)
        session.delete(user)
        session.commit()
        logger.warning("user.deleted", extra={"entity_type": self.entity_type, "entity_id": str(user_id)})

    def _ensure_may_grant(self, actor: Actor, role: Role) -> None:
        if actor.role == Role.ADMIN:
            return
        if not can_assign(actor.role, role):
            raise AuthorizationError("cannot assign to this role")


user_service = UserService()
