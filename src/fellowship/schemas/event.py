"""Event and attendance schemas."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator

from .common import ApiModel, as_utc, id_field, normalize_ref_id


class EventStatus(str, Enum):
    """Event lifecycle. Values are ordered; an event only ever moves forward."""
    DRAFT = "draft"
    PUBLISHED = "published"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    EventStatus.DRAFT,
    EventStatus.PUBLISHED,
    EventStatus.IN_PROGRESS,
    EventStatus.COMPLETED,
]

# The three volunteer teams that share one exclusion set.
TEAM_FIELDS = ("welcome_team", "cafe_team", "media_team")


class LeaderRef(ApiModel):
    """An in-charge or team-lead assignment.

    Accepts a bare id, ``{"_id": ...}`` or ``{"userId": ..., "name": ...}``
    and always stores the canonical id in ``user_id``.
    """
    user_id: str = Field(serialization_alias="userId")
    name: str = ""

    @model_validator(mode='before')
    @classmethod
    def from_any_reference(cls, value):
        if isinstance(value, LeaderRef):
            return value
        if isinstance(value, dict):
            return {"user_id": normalize_ref_id(value), "name": value.get("name") or ""}
        return {"user_id": normalize_ref_id(value)}


class TeamMember(ApiModel):
    """A person on one of the volunteer team rosters."""
    person: str
    person_name: str = ""

    @field_validator('person', mode='before')
    @classmethod
    def normalize_person(cls, v):
        return normalize_ref_id(v)


class RecurringDetails(ApiModel):
    frequency: Optional[str] = "weekly"
    days: List[str] = []
    end_date: Optional[datetime] = None

    @field_validator('end_date', mode='before')
    @classmethod
    def empty_end_date(cls, v):
        return v or None


class Event(ApiModel):
    """A scheduled event with leadership assignments and team rosters."""
    id: str = id_field()
    name: str
    description: Optional[str] = None
    start_date_time: datetime
    end_date_time: datetime
    is_recurring: bool = False
    recurring_details: Optional[RecurringDetails] = None
    status: EventStatus = EventStatus.DRAFT

    event_in_charge: List[LeaderRef] = []
    check_in_in_charge: List[LeaderRef] = []
    welcome_team_lead: Optional[LeaderRef] = None
    cafe_team_lead: Optional[LeaderRef] = None
    media_team_lead: Optional[LeaderRef] = None

    welcome_team: List[TeamMember] = []
    cafe_team: List[TeamMember] = []
    media_team: List[TeamMember] = []

    @field_validator('id', mode='before')
    @classmethod
    def normalize_id(cls, v):
        return normalize_ref_id(v)

    @field_validator('start_date_time', 'end_date_time')
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator('event_in_charge', 'check_in_in_charge', mode='before')
    @classmethod
    def drop_empty_refs(cls, v):
        return [ref for ref in (v or []) if normalize_ref_id(ref)]

    @property
    def check_in_in_charge_ids(self) -> set:
        return {ref.user_id for ref in self.check_in_in_charge}


class AttendanceRecord(ApiModel):
    """One check-in of one person at one event."""
    id: Optional[str] = id_field(default=None)
    event_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("event", "eventId", "event_id"),
    )
    person_id: str = Field(validation_alias=AliasChoices("person", "personId", "person_id"))
    person_name: Optional[str] = None
    checkin_time: Optional[datetime] = None
    checked_in_by: Optional[str] = None
    checked_in_by_name: Optional[str] = None

    @field_validator('id', 'event_id', 'person_id', 'checked_in_by', mode='before')
    @classmethod
    def normalize_refs(cls, v):
        return normalize_ref_id(v)
