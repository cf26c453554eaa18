"""Authorization gate: route- and field-level access decisions.

Given a path, the gate answers one of:

- allowed,
- redirect to ``/login`` (no live session),
- redirect to ``/`` (live session, missing permission).

Admins always pass ``view_groups`` and ``manage_groups`` routes, on top of
the general admin override in ``check_permission``.
"""

import functools
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Pattern, Tuple

from ..schemas import Identity
from .permission_service import check_permission
from .session import HOME_PATH, LOGIN_PATH, SessionStore

logger = logging.getLogger(__name__)

LOGOUT_PATH = "/logout"

# Permissions for which role admin is let through unconditionally.
ADMIN_OVERRIDE_PERMISSIONS = frozenset({"view_groups", "manage_groups"})

# Route pattern -> required permission; None means any live session.
# Order matters: the first matching pattern wins.
ROUTE_PERMISSIONS: List[Tuple[str, Optional[str]]] = [
    ("/", None),
    ("/people", "manage_people"),
    ("/people/create", "manage_people"),
    ("/people/:id", "manage_people"),
    ("/households", "manage_households"),
    ("/households/create", "manage_households"),
    ("/households/:id", "manage_households"),
    ("/users", "manage_users"),
    ("/users/create", "manage_users"),
    ("/events", "view_events"),
    ("/events/create", "manage_events"),
    ("/events/:id/checkin", "perform_check_in"),
    ("/events/:id/details", "view_events"),
    ("/events/:id", "manage_events"),
    ("/groups", "view_groups"),
    ("/groups/dashboard", "view_groups"),
    ("/groups/admin", "manage_groups"),
]

PUBLIC_PATHS = frozenset({LOGIN_PATH, LOGOUT_PATH})


def _compile(pattern: str) -> Pattern[str]:
    parts = [r"[^/]+" if part.startswith(":") else re.escape(part) for part in pattern.strip("/").split("/")]
    return re.compile("^/" + "/".join(p for p in parts if p) + "$")


_ROUTES: List[Tuple[Pattern[str], str, Optional[str]]] = [
    (_compile(pattern), pattern, permission) for pattern, permission in ROUTE_PERMISSIONS
]


class UnknownRoute(LookupError):
    pass


def resolve_path(path: str) -> Tuple[str, Optional[str]]:
    """Return ``(route pattern, required permission)`` for *path*.

    Raises:
        UnknownRoute: No route matches.
    """
    normalized = "/" + path.split("?", 1)[0].strip("/")
    for regex, pattern, permission in _ROUTES:
        if regex.match(normalized):
            return pattern, permission
    raise UnknownRoute(path)


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    redirect: Optional[str] = None
    permission: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


class AuthorizationGate:
    """Access decisions for the live session."""

    def __init__(self, session: SessionStore) -> None:
        self._session = session

    @property
    def identity(self) -> Optional[Identity]:
        return self._session.identity

    def allows(self, permission: Optional[str]) -> bool:
        """Permission check for the live identity, including the group override."""
        if not self._session.is_live:
            return False
        if permission is None:
            return True
        identity = self.identity
        if permission in ADMIN_OVERRIDE_PERMISSIONS and identity.is_admin:
            return True
        return check_permission(identity, permission)

    def guard(self, permission: Optional[str]) -> GateDecision:
        """Decide access to a view requiring *permission* (None: any session)."""
        if not self._session.is_live:
            return GateDecision(False, LOGIN_PATH, permission)
        if not self.allows(permission):
            logger.info(
                "Access denied",
                extra={"user_id": self.identity.id, "permission": permission},
            )
            return GateDecision(False, HOME_PATH, permission)
        return GateDecision(True, None, permission)

    def check(self, path: str) -> GateDecision:
        """Decide access to *path* using the route table.

        ``/logout`` ends the session and sends the user to the login page.
        Unknown paths redirect like a denied route.
        """
        normalized = "/" + path.split("?", 1)[0].strip("/")
        if normalized == LOGOUT_PATH:
            self._session.logout()
            return GateDecision(False, LOGIN_PATH)
        if normalized in PUBLIC_PATHS:
            return GateDecision(True)
        try:
            _, permission = resolve_path(normalized)
        except UnknownRoute:
            logger.debug("No route for %s", path)
            return GateDecision(False, HOME_PATH if self._session.is_live else LOGIN_PATH)
        return self.guard(permission)

    def visible(self, permission: str) -> bool:
        """Field-level check: should a UI element needing *permission* be shown?"""
        return self.allows(permission)

    def protect(self, permission: Optional[str]) -> Callable:
        """Decorate an async view so it only runs when *permission* passes.

        On denial the view is skipped, the session navigates to the
        redirect target and the decision is returned instead.
        """

        def decorator(view: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
            @functools.wraps(view)
            async def wrapper(*args: Any, **kwargs: Any) -> Any:
                decision = self.guard(permission)
                if not decision.allowed:
                    self._session.navigate(decision.redirect)
                    return decision
                return await view(*args, **kwargs)

            return wrapper

        return decorator
