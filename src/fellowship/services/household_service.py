"""Household creation with required-field checks."""

import logging
from typing import Any, Optional

from ..api_client import FellowshipClient
from ..exceptions import FellowshipError, PermissionDeniedError
from ..schemas import Household, Identity
from .permission_service import check_permission
from .validation import raise_for_errors, validate_household_data

logger = logging.getLogger(__name__)

MANAGE_HOUSEHOLDS = "manage_households"


async def create_household(api: FellowshipClient, identity: Optional[Identity], data: Any) -> Household:
    """Validate *data* and create the household.

    Raises:
        PermissionDeniedError: The identity lacks ``manage_households``.
        ValidationError: A required field is missing; nothing is sent.
        FellowshipError: The API rejected the request.
    """
    if not check_permission(identity, MANAGE_HOUSEHOLDS):
        raise PermissionDeniedError("manage households")
    raise_for_errors(validate_household_data(data))
    try:
        household = await api.households.create(data)
    except FellowshipError as e:
        logger.warning("Failed to create household: %s", e.message)
        raise
    logger.info("Household created", extra={"household_id": household.id})
    return household
