"""Session, permission, gate and cache services."""

from .event_service import BulkCheckInResult, CheckInFailure, EventCache
from .gate import AuthorizationGate, GateDecision
from .group_service import GroupCache
from .search import DebouncedSearch
from .session import SessionStore
from .timers import ViewScope

__all__ = [
    "AuthorizationGate",
    "BulkCheckInResult",
    "CheckInFailure",
    "DebouncedSearch",
    "EventCache",
    "GateDecision",
    "GroupCache",
    "SessionStore",
    "ViewScope",
]
