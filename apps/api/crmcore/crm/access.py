"""Entity loaders and ownership rules used by the route guards."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from typing import Any

from sqlalchemy.orm import Session

from crmcore.crm.models import Comment, Company, Contact, FileAttachment, FollowUp, Task, Ticket, User
from crmcore.security.context import EntityState
from crmcore.security.dependencies import EntityLoader
from crmcore.security.guards import OwnershipRule

TASK_OWNERSHIP = OwnershipRule("task", allow_managers=True, ownership_field="assigned_to_id", alternate_fields=())
TICKET_OWNERSHIP = OwnershipRule("ticket", allow_managers=True)
COMMENT_OWNERSHIP = OwnershipRule("comment", allow_managers=True, ownership_field="author_id", alternate_fields=())
FILE_OWNERSHIP = OwnershipRule("file", allow_managers=True, ownership_field="uploaded_by_id", alternate_fields=())


def _company_status(session: Session, company_id: uuid.UUID | None) -> str | None:
    if company_id is None:
        return None
    company = session.get(Company, company_id)
    return company.finalization_status if company is not None else None


def entity_loader(
    model: type[Any],
    entity_type: str,
    param: str,
    *,
    owner_fields: Sequence[str] = (),
    finalization: Callable[[Session, Any], str | None] | None = None,
) -> EntityLoader:
    def load(session: Session, path_params: dict[str, Any]) -> EntityState | None:
        try:
            entity_id = uuid.UUID(str(path_params.get(param)))
        except ValueError:
            return None
        row = session.get(model, entity_id)
        if row is None:
            return None
        owners = {}
        for name in owner_fields:
            value = getattr(row, name)
            owners[name] = str(value) if value is not None else None
        return EntityState(
            entity_type=entity_type,
            entity_id=str(entity_id),
            finalization_status=finalization(session, row) if finalization else None,
            owners=owners,
        )

    return load


company_state = entity_loader(
    Company,
    "company",
    "company_id",
    owner_fields=("assigned_data_collector_id", "assigned_converter_id"),
    finalization=lambda session, company: company.finalization_status,
)
contact_state = entity_loader(
    Contact,
    "contact",
    "contact_id",
    finalization=lambda session, contact: _company_status(session, contact.company_id),
)
follow_up_state = entity_loader(
    FollowUp,
    "follow_up",
    "follow_up_id",
    owner_fields=("created_by_id",),
    finalization=lambda session, follow_up: _company_status(session, follow_up.company_id),
)
task_state = entity_loader(Task, "task", "task_id", owner_fields=("assigned_to_id", "assigned_by_id"))
ticket_state = entity_loader(Ticket, "ticket", "ticket_id", owner_fields=("assigned_to_id", "raised_by_id"))
comment_state = entity_loader(Comment, "comment", "comment_id", owner_fields=("author_id",))
file_state = entity_loader(FileAttachment, "file", "file_id", owner_fields=("uploaded_by_id",))
user_state = entity_loader(User, "user", "user_id")
