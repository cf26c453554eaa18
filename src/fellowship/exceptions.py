"""Custom exception hierarchy for Fellowship."""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes surfaced to the UI layer."""

    # Auth & authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Client-side checks
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_STATE = "INVALID_STATE"

    # Server-reported errors
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    BAD_REQUEST = "BAD_REQUEST"
    SERVER_ERROR = "SERVER_ERROR"

    # Transport
    NETWORK_ERROR = "NETWORK_ERROR"


class FellowshipError(Exception):
    """
    Base exception for all Fellowship errors.

    Provides structured error information with:
    - Human-readable message (shown to the user verbatim)
    - Machine-readable error code
    - HTTP status code when the error came from the API
    - Optional additional details
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 0,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code
            status_code: HTTP status code (0 when no response was received)
            details: Optional additional context/details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to a dictionary for display or logging.

        Returns:
            Dictionary with error, message, and details fields
        """
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class AuthError(FellowshipError):
    """Invalid credentials or an expired/rejected session."""

    def __init__(self, message: str = "Invalid or missing authentication token"):
        super().__init__(
            message,
            ErrorCode.UNAUTHORIZED,
            status_code=401,
        )


class PermissionDeniedError(FellowshipError):
    """The current identity lacks the role required for an action."""

    def __init__(self, action: str = "perform this action", message: Optional[str] = None):
        super().__init__(
            message or f"You do not have permission to {action}",
            ErrorCode.FORBIDDEN,
            status_code=403,
            details={"action": action}
        )
        self.action = action


class ValidationError(FellowshipError):
    """Client-side required-field checks failed.

    ``errors`` maps field names to messages so each message can be shown
    next to its field.
    """

    def __init__(self, errors: Dict[str, str]):
        message = "; ".join(errors.values()) or "Validation failed"
        super().__init__(
            message,
            ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details={"errors": dict(errors)}
        )
        self.errors = dict(errors)


class InvalidStateError(FellowshipError):
    """Operation is not allowed in the entity's current state."""

    def __init__(self, message: str, state: Optional[str] = None):
        details = {"state": state} if state else {}
        super().__init__(
            message,
            ErrorCode.INVALID_STATE,
            status_code=409,
            details=details
        )


class ConflictError(FellowshipError):
    """The server already holds a conflicting record (e.g. duplicate check-in)."""

    def __init__(self, message: str = "Record already exists", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            ErrorCode.CONFLICT,
            status_code=409,
            details=details
        )


class NotFoundError(FellowshipError):
    """Requested entity does not exist on the server."""

    def __init__(self, message: str = "Not found"):
        super().__init__(
            message,
            ErrorCode.NOT_FOUND,
            status_code=404,
        )


class ApiError(FellowshipError):
    """Any other client error (4xx) reported by the API."""

    def __init__(self, message: str, status_code: int):
        super().__init__(
            message,
            ErrorCode.BAD_REQUEST,
            status_code=status_code,
        )


class ServerError(FellowshipError):
    """The API failed with a 5xx response."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(
            message,
            ErrorCode.SERVER_ERROR,
            status_code=status_code,
        )


class NetworkError(FellowshipError):
    """No response was received from the API."""

    def __init__(self, message: str = "No response received from server", original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)

        super().__init__(
            message,
            ErrorCode.NETWORK_ERROR,
            status_code=0,
            details=details
        )
