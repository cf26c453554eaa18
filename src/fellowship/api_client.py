"""HTTP client for the church administration REST API.

Every call either returns parsed JSON (validated into the schemas in
``fellowship.schemas``) or raises a classified ``FellowshipError``; raw
``httpx`` exceptions never reach callers.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from .core.config import Settings, settings as default_settings
from .exceptions import (
    ApiError,
    AuthError,
    ConflictError,
    FellowshipError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    ServerError,
)
from .schemas import (
    AttendanceRecord,
    Event,
    Group,
    GroupMember,
    GroupStats,
    Household,
    Identity,
    LoginRequest,
    LoginResult,
    Person,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]
UnauthorizedHook = Callable[[], None]

M = TypeVar("M", bound=BaseModel)

# Keys that may accompany a ``data`` envelope without carrying payload.
_ENVELOPE_KEYS = frozenset({"data", "success", "message", "status"})

# Phrases the API uses when rejecting a repeat check-in with a 400.
_DUPLICATE_MARKERS = ("already checked in", "already been checked in", "duplicate")


class FellowshipClient:
    """Async client wrapping the church administration REST API.

    Args:
        base_url: API base URL. Defaults to ``FELLOWSHIP_API_URL``; there is
                  no built-in fallback.
        token_provider: Called before each request; its return value is sent
                        as the Bearer token.
        timeout: Request timeout in seconds.
        transport: Optional ``httpx`` transport (tests inject a MockTransport).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        config: Optional[Settings] = None,
    ) -> None:
        config = config or default_settings
        self.base_url = (base_url or config.require_api_url()).rstrip("/")
        self.timeout = timeout if timeout is not None else config.api_timeout
        self._token_provider = token_provider
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._unauthorized_hooks: List[UnauthorizedHook] = []

        self.auth = AuthApi(self)
        self.groups = GroupsApi(self)
        self.events = EventsApi(self)
        self.people = PeopleApi(self)
        self.households = HouseholdsApi(self)
        self.church_users = ChurchUsersApi(self)

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def set_token_provider(self, provider: Optional[TokenProvider]) -> None:
        self._token_provider = provider

    def on_unauthorized(self, hook: UnauthorizedHook) -> None:
        """Register a callback run whenever any request is rejected with 401."""
        self._unauthorized_hooks.append(hook)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    # ------------------------------------------------------------------
    # Request pipeline
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        *,
        notify_unauthorized: bool = True,
        **kwargs: Any,
    ) -> Any:
        """Execute a request and return the unwrapped JSON body.

        A 401 response runs every unauthorized hook before ``AuthError`` is
        raised, whichever component issued the call.
        """
        client = await self._get_client()
        headers: Dict[str, str] = dict(kwargs.pop("headers", None) or {})
        token = self._token_provider() if self._token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            resp = await client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("Request %s %s failed: %s: %s", method, path, type(exc).__name__, exc)
            raise NetworkError(original_error=exc) from exc

        if resp.status_code == 401 and notify_unauthorized:
            logger.warning("Request %s %s rejected with 401; ending session", method, path)
            self._notify_unauthorized()

        if resp.status_code >= 400:
            error = _classify_error(resp)
            logger.debug(
                "API error",
                extra={"method": method, "path": path, "status": resp.status_code, "error": error.message},
            )
            raise error

        return _unwrap(resp)

    def _notify_unauthorized(self) -> None:
        for hook in list(self._unauthorized_hooks):
            try:
                hook()
            except Exception:
                logger.exception("Unauthorized hook %r failed", hook)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _unwrap(resp: httpx.Response) -> Any:
    """Return the JSON payload, peeling a ``{"data": ...}`` envelope."""
    if resp.status_code == 204 or not resp.content:
        return None
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict) and "data" in body and set(body) <= _ENVELOPE_KEYS:
        return body["data"]
    return body


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, str) and message:
            return message
    return f"Error: {resp.status_code}"


def _classify_error(resp: httpx.Response) -> FellowshipError:
    """Map an HTTP error response onto the exception hierarchy."""
    status = resp.status_code
    message = _error_message(resp)

    if status == 401:
        return AuthError(message)
    if status == 403:
        return PermissionDeniedError(message=message)
    if status == 404:
        return NotFoundError(message)
    if status == 409:
        return ConflictError(message)
    if status == 400 and any(marker in message.lower() for marker in _DUPLICATE_MARKERS):
        return ConflictError(message)
    if status >= 500:
        return ServerError(message, status_code=status)
    return ApiError(message, status_code=status)


def _parse(model: Type[M], data: Any) -> M:
    try:
        return model.model_validate(data)
    except SchemaError as exc:
        logger.error("Unexpected %s payload from API: %s", model.__name__, exc)
        raise ServerError(f"Unexpected response from server ({model.__name__})") from exc


def _parse_list(model: Type[M], data: Any, key: Optional[str] = None) -> List[M]:
    """Parse a list response, accepting both ``[...]`` and ``{key: [...]}``."""
    if key and isinstance(data, dict):
        data = data.get(key, [])
    if not data:
        return []
    if not isinstance(data, list):
        raise ServerError(f"Unexpected response from server (expected a list of {model.__name__})")
    return [_parse(model, item) for item in data]


def _payload(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True, exclude_none=True, mode="json")
    return data


# ---------------------------------------------------------------------------
# Resource namespaces: one coroutine per (resource, verb)
# ---------------------------------------------------------------------------


class _Resource:
    def __init__(self, client: FellowshipClient):
        self._client = client

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        return await self._client.request(method, path, **kwargs)


class AuthApi(_Resource):

    async def login(self, username: str, password: str) -> LoginResult:
        """Exchange credentials for a token. Maps to POST /auth/login.

        A 401 here means bad credentials, not an expired session, so the
        unauthorized hooks are not run.
        """
        body = await self._call(
            "POST", "/auth/login",
            json=LoginRequest(username=username, password=password).model_dump(),
            notify_unauthorized=False,
        )
        if not isinstance(body, dict) or not body.get("token") or not body.get("user"):
            raise AuthError("Invalid response from server")

        user = dict(body["user"])
        if not user.get("_id") and not user.get("id") and body.get("_id"):
            user["_id"] = body["_id"]
        return LoginResult(token=body["token"], user=_parse(Identity, user))


class GroupsApi(_Resource):

    async def get_all(self, params: Optional[Dict[str, Any]] = None) -> List[Group]:
        """List groups. Maps to GET /groups."""
        return _parse_list(Group, await self._call("GET", "/groups", params=params or None), "groups")

    async def get_user_groups(self) -> List[Group]:
        """Groups the current user belongs to. Maps to GET /groups/user."""
        return _parse_list(Group, await self._call("GET", "/groups/user"), "groups")

    async def get_admin_groups(self) -> List[Group]:
        """Groups for the admin management view. Maps to GET /admin/groups."""
        return _parse_list(Group, await self._call("GET", "/admin/groups"), "groups")

    async def get_one(self, group_id: str) -> Group:
        return _parse(Group, await self._call("GET", f"/groups/{group_id}"))

    async def create(self, data: Any) -> Group:
        return _parse(Group, await self._call("POST", "/groups", json=_payload(data)))

    async def update(self, group_id: str, data: Any) -> Group:
        return _parse(Group, await self._call("PUT", f"/groups/{group_id}", json=_payload(data)))

    async def delete(self, group_id: str) -> None:
        await self._call("DELETE", f"/groups/{group_id}")

    async def get_members(self, group_id: str) -> List[GroupMember]:
        return _parse_list(GroupMember, await self._call("GET", f"/groups/{group_id}/members"), "members")

    async def add_member(self, group_id: str, member_id: str, role: str = "member") -> Any:
        return await self._call(
            "POST", f"/groups/{group_id}/members",
            json={"memberId": member_id, "role": role},
        )

    async def remove_member(self, group_id: str, member_id: str) -> Any:
        return await self._call("DELETE", f"/groups/{group_id}/members/{member_id}")

    async def get_subgroups(self, group_id: str) -> List[Group]:
        return _parse_list(Group, await self._call("GET", f"/groups/{group_id}/subgroups"), "subgroups")

    async def create_subgroup(self, group_id: str, data: Any) -> Group:
        return _parse(Group, await self._call("POST", f"/groups/{group_id}/subgroups", json=_payload(data)))

    async def update_subgroup(self, group_id: str, subgroup_id: str, data: Any) -> Group:
        return _parse(
            Group,
            await self._call("PUT", f"/groups/{group_id}/subgroups/{subgroup_id}", json=_payload(data)),
        )

    async def delete_subgroup(self, group_id: str, subgroup_id: str) -> None:
        await self._call("DELETE", f"/groups/{group_id}/subgroups/{subgroup_id}")

    async def get_stats(self) -> GroupStats:
        return _parse(GroupStats, await self._call("GET", "/groups/stats"))


class EventsApi(_Resource):

    async def get_all(self, filters: Optional[Dict[str, Any]] = None) -> List[Event]:
        """List events. Maps to GET /events; empty filter values are dropped."""
        params = {k: v for k, v in (filters or {}).items() if v not in (None, "")}
        return _parse_list(Event, await self._call("GET", "/events", params=params or None), "events")

    async def get_by_id(self, event_id: str) -> Event:
        return _parse(Event, await self._call("GET", f"/events/{event_id}"))

    async def create(self, data: Any) -> Event:
        return _parse(Event, await self._call("POST", "/events", json=_payload(data)))

    async def update(self, event_id: str, data: Any) -> Event:
        return _parse(Event, await self._call("PUT", f"/events/{event_id}", json=_payload(data)))

    async def delete(self, event_id: str) -> None:
        await self._call("DELETE", f"/events/{event_id}")

    async def checkin(self, event_id: str, person_id: str, checked_in_by: Identity) -> Any:
        """Record one attendance. Maps to POST /events/{id}/check-in."""
        return await self._call(
            "POST", f"/events/{event_id}/check-in",
            json={
                "personId": str(person_id),
                "checkedInBy": checked_in_by.id or checked_in_by.username,
            },
        )

    async def get_attendance(self, event_id: str) -> List[AttendanceRecord]:
        return _parse_list(
            AttendanceRecord, await self._call("GET", f"/events/{event_id}/attendance"), "attendance",
        )

    async def get_newcomers(self, event_id: str) -> List[Person]:
        return _parse_list(Person, await self._call("GET", f"/events/{event_id}/newcomers"), "newcomers")

    async def search_attendees(self, event_id: str, phone: str) -> List[Person]:
        return _parse_list(
            Person,
            await self._call("GET", f"/events/{event_id}/search-attendees", params={"phone": phone}),
            "people",
        )


class PeopleApi(_Resource):

    async def search(self, query: str) -> List[Person]:
        return _parse_list(Person, await self._call("GET", "/people/search", params={"query": query}), "people")

    async def quick_register(self, data: Any) -> Person:
        """Create a newcomer record. Maps to POST /people/quick-register."""
        return _parse(Person, await self._call("POST", "/people/quick-register", json=_payload(data)))


class HouseholdsApi(_Resource):

    async def create(self, data: Any) -> Household:
        return _parse(Household, await self._call("POST", "/households", json=_payload(data)))


class ChurchUsersApi(_Resource):

    async def search(self, query: str, role: Optional[str] = None) -> List[Identity]:
        params = {"query": query}
        if role:
            params["role"] = role
        return _parse_list(Identity, await self._call("GET", "/church-users/search", params=params), "users")
