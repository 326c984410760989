from datetime import date, datetime
import enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ScheduleStatus(str, enum.Enum):
    upcoming = "upcoming"
    due = "due"
    overdue = "overdue"
    completed = "completed"


class ScheduleInitStatus(str, enum.Enum):
    pending = "pending"
    complete = "complete"
    incomplete = "incomplete"


class _Record(BaseModel):
    # Stored and serialized with the camelCase layout of the record store.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ------------------------------
# Children
# ------------------------------


class Child(_Record):
    id: str
    owner_account_id: str = Field(alias="userId")
    first_name: str
    last_name: str
    date_of_birth: date
    created_at: datetime
    updated_at: datetime | None = None
    schedule_status: ScheduleInitStatus = ScheduleInitStatus.pending
    # Tombstone written at the start of a cascading delete.
    deleted_at: datetime | None = None


class ChildCreate(_Record):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    date_of_birth: date


class ChildUpdate(_Record):
    # id, owner, dateOfBirth and timestamps are immutable.
    model_config = ConfigDict(extra="forbid")

    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)


# ------------------------------
# Schedule items
# ------------------------------


class ScheduleItemDraft(_Record):
    vaccine_name: str
    vaccine_description: str
    age_months: int = Field(ge=0)
    age_text: str | None = None
    due_date: date
    completed: bool = False
    status: ScheduleStatus


class ScheduleItem(_Record):
    id: str
    child_id: str
    owner_account_id: str = Field(alias="userId")
    vaccine_name: str
    vaccine_description: str | None = None
    age_months: int = Field(ge=0)
    age_text: str | None = None
    due_date: date
    completed: bool = False
    date_completed: date | None = None
    administered_by: str | None = None
    location: str | None = None
    batch_number: str | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class ScheduleItemView(ScheduleItem):
    """A schedule item as read: status is derived at read time, never stored."""

    status: ScheduleStatus


class ScheduleItemPatch(_Record):
    model_config = ConfigDict(extra="forbid")

    completed: bool | None = None
    date_completed: date | None = None
    administered_by: str | None = None
    location: str | None = None
    batch_number: str | None = None
    notes: str | None = None


class ScheduleSummary(_Record):
    child_id: str
    total: int
    counts: dict[str, int]
    next_due: ScheduleItemView | None = None


# ------------------------------
# Vaccination records
# ------------------------------


class VaccinationRecord(_Record):
    id: str
    child_id: str
    owner_account_id: str = Field(alias="userId")
    vaccine_name: str = Field(alias="vaccine")
    date_administered: date
    batch_number: str | None = None
    administered_by: str | None = None
    location: str | None = None
    notes: str | None = None
    administered: bool = True
    created_at: datetime
    updated_at: datetime | None = None


class VaccinationCreate(_Record):
    vaccine_name: str = Field(alias="vaccine", min_length=1)
    date_administered: date
    batch_number: str | None = None
    administered_by: str | None = None
    location: str | None = None
    notes: str | None = None
    administered: bool = True


class VaccinationUpdate(_Record):
    model_config = ConfigDict(extra="forbid")

    date_administered: date | None = None
    batch_number: str | None = None
    administered_by: str | None = None
    location: str | None = None
    notes: str | None = None
    administered: bool | None = None


class VaccinationAdministration(_Record):
    """Details captured when a scheduled dose is given."""

    date_administered: date
    administered_by: str | None = None
    location: str | None = None
    batch_number: str | None = None
    notes: str | None = None


# ------------------------------
# HTTP responses
# ------------------------------


class AgeResponse(_Record):
    child_id: str
    date_of_birth: date
    age: str


class DoseResponse(_Record):
    name: str
    description: str
    age_months: int
    age_text: str


class DeleteResponse(_Record):
    id: str
    deleted: bool = True


class AuditLogResponse(BaseModel):
    id: str
    actor_account_id: str | None
    action: str
    entity_type: str
    entity_id: str | None
    ip: str | None
    ts: str
    prev_hash: str | None
    entry_hash: str


class AuditVerifyResponse(BaseModel):
    ok: bool
    broken_entry_id: str | None = None
