"""Authenticated user (Identity) schemas."""

from typing import Optional, Set

from pydantic import field_validator

from .common import ApiModel, id_field, normalize_ref_id

ADMIN_ROLE = "admin"


class Identity(ApiModel):
    """The authenticated user's role- and permission-bearing record."""
    id: str = id_field()
    username: Optional[str] = None
    name: Optional[str] = None
    role: str = "user"
    permissions: Optional[Set[str]] = None
    profile_picture: Optional[str] = None

    @field_validator('id', mode='before')
    @classmethod
    def normalize_id(cls, v):
        return normalize_ref_id(v)

    @field_validator('permissions', mode='before')
    @classmethod
    def coerce_permissions(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            return {v}
        return set(v)

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


class LoginRequest(ApiModel):
    """Credentials sent to ``POST /auth/login``."""
    username: str
    password: str


class LoginResult(ApiModel):
    """Token and identity returned by a successful login."""
    token: str
    user: Identity
