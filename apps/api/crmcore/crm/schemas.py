from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal, TypeVar
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, HttpUrl, model_validator

from crmcore.security.permissions import Role


ConversionStatus = Literal["Waiting", "NoReach", "Contacted", "Negotiating", "Confirmed"]
CompanyStatus = Literal[
    "HOT",
    "WARM",
    "COLD",
    "NEW",
    "CLOSED",
    "DRIVE COMPLETED",
    "ALREADY IN CONTACT",
    "IN HOLD",
]
FinalizationStatus = Literal["Pending", "Finalized"]
TaskStatus = Literal["NotYet", "InProgress", "Completed"]
TaskType = Literal["General", "DataCollection", "Review"]
CommentEntityType = Literal["company", "task", "ticket"]
FileEntityType = Literal["company", "task", "ticket", "user"]
ReviewStatus = Literal["pending", "approved", "rejected"]

T = TypeVar("T")


def _not_null(value: T | None) -> T:
    if value is None:
        raise ValueError("may be omitted but not set to null")
    return value


# Partial updates: the key may be left out, but an explicit null would hit a NOT NULL column.
NotNull = AfterValidator(_not_null)


class CompanyBase(BaseModel):
    name: str = Field(min_length=1)
    website: HttpUrl | None = None
    phone: str | None = None
    email: EmailStr | None = None
    address: str | None = None
    industry: str | None = None
    notes: str | None = None
    status: CompanyStatus | None = None
    conversion_status: ConversionStatus | None = None
    custom_fields: dict[str, Any] | None = None
    assigned_data_collector_id: UUID | None = None
    assigned_converter_id: UUID | None = None
    is_public: bool | None = None


class CompanyCreate(CompanyBase):
    contact_person: str = Field(min_length=1)


class CompanyImportRecord(CompanyBase):
    contact_person: str | None = None


class CompanyUpdate(BaseModel):
    name: Annotated[str | None, NotNull] = Field(default=None, min_length=1)
    website: HttpUrl | None = None
    phone: str | None = None
    email: EmailStr | None = None
    address: str | None = None
    industry: str | None = None
    contact_person: str | None = Field(default=None, min_length=1)
    notes: str | None = None
    status: Annotated[CompanyStatus | None, NotNull] = None
    conversion_status: Annotated[ConversionStatus | None, NotNull] = None
    custom_fields: Annotated[dict[str, Any] | None, NotNull] = None
    assigned_data_collector_id: UUID | None = None
    assigned_converter_id: UUID | None = None
    is_public: Annotated[bool | None, NotNull] = None


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    website: str | None
    phone: str | None
    email: str | None
    address: str | None
    industry: str | None
    contact_person: str | None
    notes: str | None
    status: str
    conversion_status: str
    custom_fields: dict[str, Any]
    assigned_data_collector_id: UUID | None
    assigned_converter_id: UUID | None
    finalization_status: FinalizationStatus
    finalized_by_id: UUID | None
    finalized_at: datetime | None
    is_public: bool
    review_decision: str | None
    reviewed_by_id: UUID | None
    reviewed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class CompanyVisibilityUpdate(BaseModel):
    is_public: bool


class BulkReviewRequest(BaseModel):
    company_ids: list[UUID] = Field(min_length=1)
    action: Literal["approve", "reject"]


class BulkFailure(BaseModel):
    id: UUID
    reason: str


class BulkResult(BaseModel):
    updated: int
    failed: list[BulkFailure] = Field(default_factory=list)


class ImportRequest(BaseModel):
    companies: list[dict[str, Any]] = Field(min_length=1)


class FieldError(BaseModel):
    field: str
    message: str
    code: str


class ImportRecordError(BaseModel):
    index: int
    name: str | None
    errors: list[FieldError]


class ImportResult(BaseModel):
    count: int
    errors: list[ImportRecordError] = Field(default_factory=list)


class ContactCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    designation: str | None = None
    notes: str | None = None


class ContactUpdate(BaseModel):
    name: Annotated[str | None, NotNull] = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    designation: str | None = None
    notes: str | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    name: str
    email: str | None
    phone: str | None
    designation: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class FollowUpCreate(BaseModel):
    contacted_date: date
    follow_up_date: date
    notes: str | None = None

    @model_validator(mode="after")
    def validate_dates(self) -> FollowUpCreate:
        if self.follow_up_date <= self.contacted_date:
            raise ValueError("follow_up_date must be after contacted_date")
        return self


class FollowUpUpdate(BaseModel):
    contacted_date: Annotated[date | None, NotNull] = None
    follow_up_date: Annotated[date | None, NotNull] = None
    notes: str | None = None

    @model_validator(mode="after")
    def validate_dates(self) -> FollowUpUpdate:
        if self.contacted_date and self.follow_up_date and self.follow_up_date <= self.contacted_date:
            raise ValueError("follow_up_date must be after contacted_date")
        return self


class FollowUpRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    contacted_date: date
    follow_up_date: date
    notes: str | None
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    status: TaskStatus = "NotYet"
    task_type: TaskType = "General"
    deadline: datetime | None = None
    company_id: UUID | None = None
    assigned_to_id: UUID


class TaskUpdate(BaseModel):
    title: Annotated[str | None, NotNull] = Field(default=None, min_length=1)
    description: str | None = None
    status: Annotated[TaskStatus | None, NotNull] = None
    task_type: Annotated[TaskType | None, NotNull] = None
    deadline: datetime | None = None
    company_id: UUID | None = None
    assigned_to_id: UUID | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    status: TaskStatus
    task_type: TaskType
    deadline: datetime | None
    company_id: UUID | None
    assigned_to_id: UUID | None
    assigned_by_id: UUID | None
    created_at: datetime
    updated_at: datetime


class TicketCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    company_id: UUID | None = None
    assigned_to_id: UUID | None = None


class TicketUpdate(BaseModel):
    title: Annotated[str | None, NotNull] = Field(default=None, min_length=1)
    description: str | None = Field(default=None, min_length=1)
    is_resolved: Annotated[bool | None, NotNull] = None
    assigned_to_id: UUID | None = None


class TicketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    is_resolved: bool
    company_id: UUID | None
    assigned_to_id: UUID | None
    raised_by_id: UUID | None
    created_at: datetime
    updated_at: datetime


class OpenCount(BaseModel):
    count: int


class UserCreate(BaseModel):
    email: EmailStr
    full_name: str = Field(min_length=2)
    role: Role
    region: str | None = None
    can_raise_tickets: bool = True


class UserUpdate(BaseModel):
    full_name: Annotated[str | None, NotNull] = Field(default=None, min_length=2)
    role: Annotated[Role | None, NotNull] = None
    region: str | None = None
    is_active: Annotated[bool | None, NotNull] = None


class TicketPermissionUpdate(BaseModel):
    can_raise_tickets: bool


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    full_name: str
    role: str
    region: str | None
    can_raise_tickets: bool
    is_active: bool
    created_at: datetime


class CommentCreate(BaseModel):
    entity_type: CommentEntityType
    entity_id: UUID
    body: str = Field(min_length=1)


class CommentUpdate(BaseModel):
    body: str = Field(min_length=1)


class CommentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: UUID
    author_id: UUID
    body: str
    created_at: datetime
    updated_at: datetime


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    message: str
    type: str
    entity_type: str | None
    entity_id: UUID | None
    is_read: bool
    created_at: datetime


class FileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: UUID
    filename: str
    content_type: str
    size_bytes: int
    uploaded_by_id: UUID
    created_at: datetime


class AuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID | None
    action: str
    entity_type: str
    entity_id: str | None
    changes: dict[str, Any]
    ip_address: str | None
    correlation_id: str | None
    created_at: datetime


class SecurityEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_type: str
    user_id: UUID | None
    ip_address: str | None
    user_agent: str | None
    details: dict[str, Any]
    severity: str
    correlation_id: str | None
    created_at: datetime


class DeletionRequestCreate(BaseModel):
    follow_up_id: UUID
    reason: str | None = Field(default=None, min_length=10)


class DeletionRequestReview(BaseModel):
    action: Literal["approve", "reject"]
    rejection_reason: str | None = None


class DeletionRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    follow_up_id: UUID | None
    company_id: UUID | None
    requested_by_id: UUID
    reason: str | None
    status: ReviewStatus
    reviewed_by_id: UUID | None
    reviewed_at: datetime | None
    rejection_reason: str | None
    created_at: datetime
    updated_at: datetime


class ProfileChangeCreate(BaseModel):
    full_name: Annotated[str | None, NotNull] = Field(default=None, min_length=2)
    email: Annotated[EmailStr | None, NotNull] = None
    region: str | None = None

    @model_validator(mode="after")
    def require_changes(self) -> ProfileChangeCreate:
        if not self.model_fields_set:
            raise ValueError("no changes requested")
        return self


class ProfileChangeReject(BaseModel):
    reason: str | None = None


class ProfileChangeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    requested_changes: dict[str, Any]
    current_values: dict[str, Any]
    status: ReviewStatus
    reviewed_by_id: UUID | None
    reviewed_at: datetime | None
    rejection_reason: str | None
    requested_at: datetime


class LabelCount(BaseModel):
    label: str
    count: int


class UserWorkload(BaseModel):
    user_id: UUID
    full_name: str
    count: int


class DashboardStats(BaseModel):
    companies: int
    tasks: int
    tickets: int
    users: int
    pending_deletion_requests: int


class CompanyStats(BaseModel):
    by_status: list[LabelCount]
    by_conversion: list[LabelCount]
    by_finalization: list[LabelCount]


class WorkStats(BaseModel):
    by_status: list[LabelCount]
    by_user: list[UserWorkload]


class ActivityPoint(BaseModel):
    day: date
    type: Literal["company", "task"]
    count: int


class SearchResults(BaseModel):
    companies: list[CompanyRead] = Field(default_factory=list)
    contacts: list[ContactRead] = Field(default_factory=list)
    tasks: list[TaskRead] = Field(default_factory=list)
    tickets: list[TicketRead] = Field(default_factory=list)
    users: list[UserRead] = Field(default_factory=list)
