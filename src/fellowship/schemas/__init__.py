"""Pydantic schemas for API entities."""

from .common import ApiModel, normalize_ref_id
from .identity import Identity, LoginRequest, LoginResult
from .group import Group, GroupLeader, GroupMember, GroupStats, MEMBERSHIP_ROLES
from .event import (
    AttendanceRecord,
    Event,
    EventStatus,
    LeaderRef,
    RecurringDetails,
    TeamMember,
    TEAM_FIELDS,
)
from .person import Household, Person

__all__ = [
    "ApiModel",
    "normalize_ref_id",
    "Identity",
    "LoginRequest",
    "LoginResult",
    "Group",
    "GroupLeader",
    "GroupMember",
    "GroupStats",
    "MEMBERSHIP_ROLES",
    "AttendanceRecord",
    "Event",
    "EventStatus",
    "LeaderRef",
    "RecurringDetails",
    "TeamMember",
    "TEAM_FIELDS",
    "Household",
    "Person",
]
