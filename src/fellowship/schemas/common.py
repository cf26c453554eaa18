"""Base model and reference normalization shared by all entity schemas.

The API is inconsistent about how it references other records: the same
person may arrive as ``"64f0..."``, ``{"_id": "64f0..."}`` or
``{"userId": "64f0...", "name": "..."}``. ``normalize_ref_id`` is the one
place that turns any of those into a canonical id string; schemas call it
from their validators so business logic only ever compares plain strings.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Keys checked, in order, when a reference arrives as an object.
_REF_KEYS = ("_id", "userId", "id")


def normalize_ref_id(ref: Any) -> Optional[str]:
    """Reduce an id, ``{_id}``, ``{userId}`` or model reference to an id string.

    Returns None when *ref* carries no id at all.
    """
    if ref is None:
        return None
    if isinstance(ref, BaseModel):
        ref = ref.model_dump(by_alias=True)
    if isinstance(ref, dict):
        for key in _REF_KEYS:
            value = ref.get(key)
            if value is not None:
                # Populated references nest the object one level down.
                return normalize_ref_id(value)
        return None
    ref = str(ref).strip()
    return ref or None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes so comparisons against ``now`` are valid."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def id_field(**kwargs: Any) -> Any:
    """Field definition for an entity id that the API sends as ``_id``."""
    return Field(
        validation_alias=AliasChoices("_id", "id"),
        serialization_alias="_id",
        **kwargs,
    )


class ApiModel(BaseModel):
    """Base for every entity exchanged with the API.

    Field names are snake_case in Python and camelCase on the wire.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )
