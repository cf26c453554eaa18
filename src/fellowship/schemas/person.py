"""People and household schemas."""

from typing import Optional

from pydantic import field_validator

from .common import ApiModel, id_field, normalize_ref_id


class Person(ApiModel):
    """A person record as returned by people search and quick registration."""
    id: str = id_field()
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    gender: Optional[str] = None
    email: Optional[str] = None
    profile_picture: Optional[str] = None

    @field_validator('id', mode='before')
    @classmethod
    def normalize_id(cls, v):
        return normalize_ref_id(v)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.id


class Household(ApiModel):
    """A household record. Only the fields the client inspects are typed."""
    id: str = id_field()
    head_of_household: Optional[str] = None
    primary_phone: Optional[str] = None

    @field_validator('id', 'head_of_household', mode='before')
    @classmethod
    def normalize_refs(cls, v):
        return normalize_ref_id(v)
