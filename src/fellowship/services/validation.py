"""Client-side form validation.

Each validator returns a ``{field: message}`` dict (empty when valid) so
the UI can show every message beside its field. ``raise_for_errors``
turns a non-empty dict into ``ValidationError``; callers run it before
any network call.
"""

from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from ..exceptions import ValidationError
from ..schemas.common import as_utc, normalize_ref_id
from ..schemas.group import MEMBERSHIP_ROLES

Errors = Dict[str, str]


def _get(data: Any, *keys: str) -> Any:
    """Read the first present key from a dict or attribute from a model."""
    for key in keys:
        if isinstance(data, Mapping):
            if key in data:
                return data[key]
        elif hasattr(data, key):
            return getattr(data, key)
    return None


def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value.strip():
        try:
            return as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def raise_for_errors(errors: Errors) -> None:
    if errors:
        raise ValidationError(errors)


def validate_group_data(data: Any) -> Errors:
    errors: Errors = {}
    if _blank(_get(data, "name")):
        errors["name"] = "Group name is required"
    return errors


def validate_member_role(role: str) -> Errors:
    if role not in MEMBERSHIP_ROLES:
        return {"role": f"Role must be one of: {', '.join(MEMBERSHIP_ROLES)}"}
    return {}


def validate_event_data(data: Any) -> Errors:
    """Validate an event form (dict in API or Python field names, or an Event)."""
    errors: Errors = {}

    if _blank(_get(data, "name")):
        errors["name"] = "Event name is required"

    raw_start = _get(data, "startDateTime", "start_date_time")
    raw_end = _get(data, "endDateTime", "end_date_time")
    if _blank(raw_start):
        errors["startDateTime"] = "Start date & time is required"
    if _blank(raw_end):
        errors["endDateTime"] = "End date & time is required"

    start, end = _as_datetime(raw_start), _as_datetime(raw_end)
    if not _blank(raw_start) and start is None:
        errors["startDateTime"] = "Start date & time is invalid"
    if not _blank(raw_end) and end is None:
        errors["endDateTime"] = "End date & time is invalid"
    if start and end and end <= start:
        errors["endDateTime"] = "End date & time must be after the start"

    in_charge = _get(data, "eventInCharge", "event_in_charge") or []
    if not [ref for ref in in_charge if normalize_ref_id(ref)]:
        errors["eventInCharge"] = "At least one event in-charge is required"
    check_in = _get(data, "checkInInCharge", "check_in_in_charge") or []
    if not [ref for ref in check_in if normalize_ref_id(ref)]:
        errors["checkInInCharge"] = "At least one check-in in-charge is required"

    if _get(data, "isRecurring", "is_recurring"):
        details = _get(data, "recurringDetails", "recurring_details") or {}
        if _blank(_get(details, "frequency")):
            errors["frequency"] = "Frequency is required for recurring events"
        if _blank(_get(details, "days")):
            errors["days"] = "Select at least one day for recurring events"

    return errors


def validate_household_data(data: Any) -> Errors:
    errors: Errors = {}
    address = _get(data, "address") or data
    if _blank(normalize_ref_id(_get(data, "headOfHousehold", "head_of_household"))):
        errors["headOfHousehold"] = "Head of household is required"
    if _blank(_get(address, "street")):
        errors["street"] = "Street is required"
    if _blank(_get(address, "city")):
        errors["city"] = "City is required"
    if _blank(_get(address, "state")):
        errors["state"] = "State is required"
    if _blank(_get(address, "zipCode", "zip_code")):
        errors["zipCode"] = "ZIP code is required"
    if _blank(_get(data, "primaryPhone", "primary_phone")):
        errors["primaryPhone"] = "Primary phone is required"
    return errors


def validate_newcomer_data(data: Any) -> Errors:
    errors: Errors = {}
    if _blank(_get(data, "firstName", "first_name")):
        errors["firstName"] = "First name is required"
    if _blank(_get(data, "lastName", "last_name")):
        errors["lastName"] = "Last name is required"
    if _blank(_get(data, "gender")):
        errors["gender"] = "Gender is required"
    return errors
