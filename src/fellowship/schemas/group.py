"""Group (small-group ministry) schemas."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import AliasChoices, Field, field_validator

from .common import ApiModel, id_field, normalize_ref_id

# Closed set of roles a user can hold inside a group.
MEMBERSHIP_ROLES = ("admin", "moderator", "member")

MembershipRole = Literal["admin", "moderator", "member"]


class GroupMember(ApiModel):
    """A user's membership record on a group."""
    user_id: str = Field(
        validation_alias=AliasChoices("userId", "user_id", "user", "_id"),
        serialization_alias="userId",
    )
    role: MembershipRole = "member"

    @field_validator('user_id', mode='before')
    @classmethod
    def normalize_user(cls, v):
        return normalize_ref_id(v)


class GroupLeader(ApiModel):
    """Leader reference: a person id plus display name."""
    person_id: str = Field(
        validation_alias=AliasChoices("person", "personId", "person_id", "_id"),
        serialization_alias="person",
    )
    name: str = ""

    @field_validator('person_id', mode='before')
    @classmethod
    def normalize_person(cls, v):
        return normalize_ref_id(v)


class Group(ApiModel):
    """A group or subgroup. Subgroups share this shape."""
    id: str = id_field()
    name: str
    description: Optional[str] = None
    visibility_type: str = "public"
    subgroups: List["Group"] = []
    members: List[GroupMember] = []
    leaders: List[GroupLeader] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('id', mode='before')
    @classmethod
    def normalize_id(cls, v):
        return normalize_ref_id(v)

    @field_validator('subgroups', mode='before')
    @classmethod
    def drop_unpopulated_subgroups(cls, v):
        # Unpopulated subgroup references are plain ids; keep only full records.
        return [s for s in (v or []) if isinstance(s, (dict, Group))]

    def membership_for(self, user_id: Optional[str]) -> Optional[GroupMember]:
        if not user_id:
            return None
        return next((m for m in self.members if m.user_id == user_id), None)


Group.model_rebuild()


class GroupStats(ApiModel):
    """Aggregate counters shown on the groups dashboard."""
    total_groups: int = 0
    user_groups: int = 0      # groups the current user belongs to / owns
    active_groups: int = 0    # active in the last 7 days
    new_groups: int = 0       # created in the last 30 days
