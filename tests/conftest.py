"""Shared test fixtures for the Fellowship test suite.

The REST API is replaced by ``FakeBackend``, an in-memory implementation
of the endpoints the client uses, mounted with ``httpx.MockTransport``.
No network access is needed. Each test gets a fresh backend, so tests
are fully isolated.
"""

import copy
import itertools
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import Mock

import httpx
import pytest

from fellowship.api_client import FellowshipClient
from fellowship.core.logging_config import _SecretFilter
from fellowship.services.event_service import EventCache
from fellowship.services.group_service import GroupCache
from fellowship.services.session import SessionStore
from fellowship.storage import MemoryTokenStore

BASE_URL = "http://testserver/api"

# Fixed wall-clock time used by event tests.
NOW = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

PASSWORD = "secret-pass"


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def _user(user_id: str, username: str, role: str = "user", permissions: Optional[List[str]] = None) -> dict:
    return {
        "_id": user_id,
        "username": username,
        "name": username.title(),
        "role": role,
        "permissions": permissions or [],
    }


class FakeBackend:
    """In-memory stand-in for the church administration API."""

    def __init__(self) -> None:
        self._ids = itertools.count(100)
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], Tuple[int, str]] = {}
        self.tokens: Dict[str, str] = {}
        self.duplicate_search_results = False

        self.users: Dict[str, dict] = {
            u["username"]: u
            for u in [
                _user("u-admin", "admin", role="admin"),
                _user("u-gadmin", "gadmin", permissions=["view_groups"]),
                _user("u-mod", "mod", permissions=["view_groups"]),
                _user("u-member", "member", permissions=["view_groups", "view_events"]),
                _user("u-staff", "staff", role="check_in_staff", permissions=["view_events", "perform_check_in"]),
                _user("u-leader", "leader", permissions=["view_events"]),
                _user("u-out", "outsider"),
                _user("u-manager", "manager", permissions=["view_events", "manage_events", "manage_households"]),
                _user("u-usermgr", "usermgr", permissions=["manage_users"]),
            ]
        }

        self.groups: Dict[str, dict] = {
            "g-1": {
                "_id": "g-1",
                "name": "Youth",
                "description": "Youth ministry",
                "visibilityType": "public",
                "members": [
                    {"userId": "u-gadmin", "role": "admin"},
                    {"userId": "u-mod", "role": "moderator"},
                    {"userId": "u-member", "role": "member"},
                ],
                "leaders": [{"person": {"_id": "p-1"}, "name": "Ann Lee"}],
                "subgroups": [],
            },
            "g-2": {
                "_id": "g-2",
                "name": "Elders",
                "visibilityType": "private",
                "members": [{"userId": {"_id": "u-member"}, "role": "member"}],
                "leaders": [],
                "subgroups": [],
            },
        }

        self.people: Dict[str, dict] = {
            "p-1": {"_id": "p-1", "firstName": "Ann", "lastName": "Lee", "phone": "5550001"},
            "p-2": {"_id": "p-2", "firstName": "Bob", "lastName": "Ray", "phone": "5550002"},
            "p-3": {"_id": "p-3", "firstName": "Cy", "lastName": "Dee", "phone": "5550003"},
        }

        in_charge = [{"_id": "u-leader", "name": "Leader"}, "u-x", {"userId": "u-y", "name": "Y"}]
        self.events: Dict[str, dict] = {
            "e-open": self._event("e-open", "Sunday Service", "published",
                                  NOW - timedelta(minutes=30), NOW + timedelta(hours=2), in_charge),
            "e-later": self._event("e-later", "Evening Prayer", "published",
                                   NOW + timedelta(hours=6), NOW + timedelta(hours=8), in_charge),
            "e-draft": self._event("e-draft", "Planning", "draft",
                                   NOW - timedelta(hours=3), NOW - timedelta(hours=1), in_charge),
            "e-done": self._event("e-done", "Last Week", "completed",
                                  NOW - timedelta(days=7), NOW - timedelta(days=7) + timedelta(hours=2), in_charge),
        }
        self.attendance: Dict[str, List[dict]] = {event_id: [] for event_id in self.events}
        self.newcomers: Dict[str, List[dict]] = {event_id: [] for event_id in self.events}

        self._routes: List[Tuple[str, re.Pattern, Callable]] = [
            ("POST", re.compile(r"^/auth/login$"), self._login),
            ("GET", re.compile(r"^/groups/user$"), self._user_groups),
            ("GET", re.compile(r"^/groups/stats$"), self._group_stats),
            ("GET", re.compile(r"^/admin/groups$"), self._list_groups),
            ("GET", re.compile(r"^/groups$"), self._list_groups),
            ("POST", re.compile(r"^/groups$"), self._create_group),
            ("GET", re.compile(r"^/groups/(?P<gid>[^/]+)$"), self._get_group),
            ("PUT", re.compile(r"^/groups/(?P<gid>[^/]+)$"), self._update_group),
            ("DELETE", re.compile(r"^/groups/(?P<gid>[^/]+)$"), self._delete_group),
            ("GET", re.compile(r"^/groups/(?P<gid>[^/]+)/members$"), self._members),
            ("POST", re.compile(r"^/groups/(?P<gid>[^/]+)/members$"), self._add_member),
            ("DELETE", re.compile(r"^/groups/(?P<gid>[^/]+)/members/(?P<mid>[^/]+)$"), self._remove_member),
            ("GET", re.compile(r"^/groups/(?P<gid>[^/]+)/subgroups$"), self._subgroups),
            ("POST", re.compile(r"^/groups/(?P<gid>[^/]+)/subgroups$"), self._create_subgroup),
            ("PUT", re.compile(r"^/groups/(?P<gid>[^/]+)/subgroups/(?P<sid>[^/]+)$"), self._update_subgroup),
            ("DELETE", re.compile(r"^/groups/(?P<gid>[^/]+)/subgroups/(?P<sid>[^/]+)$"), self._delete_subgroup),
            ("GET", re.compile(r"^/events$"), self._list_events),
            ("POST", re.compile(r"^/events$"), self._create_event),
            ("GET", re.compile(r"^/events/(?P<eid>[^/]+)$"), self._get_event),
            ("PUT", re.compile(r"^/events/(?P<eid>[^/]+)$"), self._update_event),
            ("DELETE", re.compile(r"^/events/(?P<eid>[^/]+)$"), self._delete_event),
            ("POST", re.compile(r"^/events/(?P<eid>[^/]+)/check-in$"), self._check_in),
            ("GET", re.compile(r"^/events/(?P<eid>[^/]+)/attendance$"), self._attendance),
            ("GET", re.compile(r"^/events/(?P<eid>[^/]+)/newcomers$"), self._newcomers),
            ("GET", re.compile(r"^/events/(?P<eid>[^/]+)/search-attendees$"), self._search_attendees),
            ("GET", re.compile(r"^/people/search$"), self._search_people),
            ("POST", re.compile(r"^/people/quick-register$"), self._quick_register),
            ("POST", re.compile(r"^/households$"), self._create_household),
            ("GET", re.compile(r"^/church-users/search$"), self._search_users),
        ]

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def fail(self, method: str, path: str, status: int, message: str = "") -> None:
        """Make every ``method path`` request answer with *status*."""
        self.failures[(method, path)] = (status, message)

    def heal(self) -> None:
        self.failures.clear()

    def revoke_tokens(self) -> None:
        self.tokens.clear()

    def count(self, method: str, path: str) -> int:
        return self.calls.count((method, path))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/api"):
            path = path[len("/api"):]
        method = request.method
        self.calls.append((method, path))

        if (method, path) in self.failures:
            status, message = self.failures[(method, path)]
            return httpx.Response(status, json={"message": message} if message else {})

        self._current_user = None
        if path != "/auth/login":
            auth = request.headers.get("Authorization", "")
            token = auth[len("Bearer "):] if auth.startswith("Bearer ") else ""
            user_id = self.tokens.get(token)
            if user_id is None:
                return httpx.Response(401, json={"message": "Token is not valid"})
            self._current_user = user_id

        body = json.loads(request.content) if request.content else None
        for route_method, pattern, fn in self._routes:
            match = pattern.match(path)
            if route_method == method and match:
                return fn(request, body, **match.groupdict())
        return httpx.Response(404, json={"message": f"No route {method} {path}"})

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    @staticmethod
    def _ok(payload: Any, status: int = 200) -> httpx.Response:
        return httpx.Response(status, json=payload)

    @staticmethod
    def _not_found(what: str) -> httpx.Response:
        return httpx.Response(404, json={"message": f"{what} not found"})

    @staticmethod
    def _event(event_id, name, status, start, end, in_charge) -> dict:
        return {
            "_id": event_id,
            "name": name,
            "startDateTime": _iso(start),
            "endDateTime": _iso(end),
            "status": status,
            "isRecurring": False,
            "eventInCharge": [{"_id": "u-manager", "name": "Manager"}],
            "checkInInCharge": list(in_charge),
            "welcomeTeam": [],
            "cafeTeam": [],
            "mediaTeam": [],
        }

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def _login(self, request, body, **_):
        user = self.users.get(body.get("username"))
        if user is None or body.get("password") != PASSWORD:
            return httpx.Response(401, json={"message": "Invalid credentials"})
        token = f"tok-{user['_id']}-{next(self._ids)}"
        self.tokens[token] = user["_id"]
        return self._ok({"token": token, "user": copy.deepcopy(user)})

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def _is_member(self, group: dict, user_id: str) -> bool:
        for member in group["members"]:
            ref = member["userId"]
            if (ref["_id"] if isinstance(ref, dict) else ref) == user_id:
                return True
        return False

    def _list_groups(self, request, body, **_):
        return self._ok({"groups": copy.deepcopy(list(self.groups.values()))})

    def _user_groups(self, request, body, **_):
        mine = [g for g in self.groups.values() if self._is_member(g, self._current_user)]
        return self._ok({"success": True, "data": copy.deepcopy(mine)})

    def _group_stats(self, request, body, **_):
        mine = [g for g in self.groups.values() if self._is_member(g, self._current_user)]
        return self._ok({"totalGroups": len(self.groups), "userGroups": len(mine), "activeGroups": 1, "newGroups": 0})

    def _get_group(self, request, body, gid):
        if gid not in self.groups:
            return self._not_found("Group")
        return self._ok(copy.deepcopy(self.groups[gid]))

    def _create_group(self, request, body, **_):
        gid = self._next_id("g")
        group = {
            "_id": gid, "visibilityType": "public", "subgroups": [], "leaders": [],
            **body,
            "members": [{"userId": self._current_user, "role": "admin"}],
        }
        self.groups[gid] = group
        return self._ok(copy.deepcopy(group), 201)

    def _update_group(self, request, body, gid):
        if gid not in self.groups:
            return self._not_found("Group")
        self.groups[gid].update(body)
        return self._ok(copy.deepcopy(self.groups[gid]))

    def _delete_group(self, request, body, gid):
        if self.groups.pop(gid, None) is None:
            return self._not_found("Group")
        return self._ok({"message": "Group deleted"})

    def _members(self, request, body, gid):
        if gid not in self.groups:
            return self._not_found("Group")
        return self._ok({"members": copy.deepcopy(self.groups[gid]["members"])})

    def _add_member(self, request, body, gid):
        group = self.groups.get(gid)
        if group is None:
            return self._not_found("Group")
        if self._is_member(group, body["memberId"]):
            return httpx.Response(400, json={"message": "User is already a member"})
        group["members"].append({"userId": body["memberId"], "role": body.get("role", "member")})
        return self._ok(copy.deepcopy(group))

    def _remove_member(self, request, body, gid, mid):
        group = self.groups.get(gid)
        if group is None:
            return self._not_found("Group")
        group["members"] = [
            m for m in group["members"]
            if (m["userId"]["_id"] if isinstance(m["userId"], dict) else m["userId"]) != mid
        ]
        return self._ok(copy.deepcopy(group))

    def _subgroups(self, request, body, gid):
        if gid not in self.groups:
            return self._not_found("Group")
        return self._ok(copy.deepcopy(self.groups[gid]["subgroups"]))

    def _create_subgroup(self, request, body, gid):
        group = self.groups.get(gid)
        if group is None:
            return self._not_found("Group")
        sub = {"_id": self._next_id("sg"), "members": [], "subgroups": [], **body}
        group["subgroups"].append(sub)
        return self._ok(copy.deepcopy(sub), 201)

    def _update_subgroup(self, request, body, gid, sid):
        group = self.groups.get(gid)
        sub = next((s for s in (group or {}).get("subgroups", []) if s["_id"] == sid), None)
        if sub is None:
            return self._not_found("Subgroup")
        sub.update(body)
        return self._ok(copy.deepcopy(sub))

    def _delete_subgroup(self, request, body, gid, sid):
        group = self.groups.get(gid)
        if group is None:
            return self._not_found("Group")
        group["subgroups"] = [s for s in group["subgroups"] if s["_id"] != sid]
        return httpx.Response(204)

    # ------------------------------------------------------------------
    # Events and attendance
    # ------------------------------------------------------------------

    def _list_events(self, request, body, **_):
        events = list(self.events.values())
        status = request.url.params.get("status")
        if status:
            events = [e for e in events if e["status"] == status]
        return self._ok({"events": copy.deepcopy(events), "total": len(events)})

    def _create_event(self, request, body, **_):
        eid = self._next_id("e")
        event = {"_id": eid, "status": "draft", **body}
        self.events[eid] = event
        self.attendance[eid] = []
        self.newcomers[eid] = []
        return self._ok(copy.deepcopy(event), 201)

    def _get_event(self, request, body, eid):
        if eid not in self.events:
            return self._not_found("Event")
        return self._ok(copy.deepcopy(self.events[eid]))

    def _update_event(self, request, body, eid):
        if eid not in self.events:
            return self._not_found("Event")
        self.events[eid].update(body)
        return self._ok(copy.deepcopy(self.events[eid]))

    def _delete_event(self, request, body, eid):
        if self.events.pop(eid, None) is None:
            return self._not_found("Event")
        return self._ok({"message": "Event deleted"})

    def _check_in(self, request, body, eid):
        event = self.events.get(eid)
        if event is None:
            return self._not_found("Event")
        if event["status"] not in ("published", "in_progress"):
            return httpx.Response(400, json={"message": "Check-in is not open for this event"})
        person_id = body["personId"]
        if any(a["person"]["_id"] == person_id for a in self.attendance[eid]):
            return httpx.Response(400, json={"message": "Person already checked in"})
        person = self.people.get(person_id, {"_id": person_id})
        record = {
            "_id": self._next_id("a"),
            "event": eid,
            "person": copy.deepcopy(person),
            "personName": f"{person.get('firstName', '')} {person.get('lastName', '')}".strip(),
            "checkinTime": _iso(NOW),
            "checkedInBy": body["checkedInBy"],
        }
        self.attendance[eid].append(record)
        return self._ok({"message": "Checked in", "attendance": copy.deepcopy(record)}, 201)

    def _attendance(self, request, body, eid):
        if eid not in self.events:
            return self._not_found("Event")
        return self._ok(copy.deepcopy(self.attendance[eid]))

    def _newcomers(self, request, body, eid):
        return self._ok(copy.deepcopy(self.newcomers.get(eid, [])))

    def _search_attendees(self, request, body, eid):
        phone = request.url.params.get("phone", "")
        found = [p for p in self.people.values() if phone in (p.get("phone") or "")]
        if self.duplicate_search_results:
            found = found + found
        return self._ok(copy.deepcopy(found))

    # ------------------------------------------------------------------
    # People, households, church users
    # ------------------------------------------------------------------

    def _search_people(self, request, body, **_):
        query = request.url.params.get("query", "").lower()
        found = [
            p for p in self.people.values()
            if query in f"{p['firstName']} {p['lastName']}".lower()
        ]
        return self._ok({"people": copy.deepcopy(found)})

    def _quick_register(self, request, body, **_):
        pid = self._next_id("p")
        person = {
            "_id": pid,
            "firstName": body["firstName"],
            "lastName": body["lastName"],
            "gender": body.get("gender"),
            "phone": body.get("phone"),
        }
        self.people[pid] = person
        event_id = body.get("eventId")
        if event_id in self.newcomers:
            self.newcomers[event_id].append(person)
        return self._ok(copy.deepcopy(person), 201)

    def _create_household(self, request, body, **_):
        household = {"_id": self._next_id("h"), **body}
        return self._ok(household, 201)

    def _search_users(self, request, body, **_):
        query = request.url.params.get("query", "").lower()
        role = request.url.params.get("role")
        found = [
            u for u in self.users.values()
            if query in u["username"] and (role is None or u["role"] == role)
        ]
        return self._ok({"users": copy.deepcopy(found)})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Remove the handler setup_logging installs and restore the root level."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if any(isinstance(f, _SecretFilter) for f in handler.filters):
            root.removeHandler(handler)
    root.setLevel(level)


@pytest.fixture()
def backend():
    return FakeBackend()


@pytest.fixture()
async def api(backend):
    client = FellowshipClient(base_url=BASE_URL, transport=backend.transport)
    yield client
    await client.close()


@pytest.fixture()
def token_store():
    return MemoryTokenStore()


@pytest.fixture()
def navigate():
    return Mock()


@pytest.fixture()
async def session(api, token_store, navigate):
    store = SessionStore(api, token_store, idle_timeout=60, navigate=navigate)
    yield store
    store.close()


@pytest.fixture()
def login_as(session):
    """Log the session in as one of the seeded users."""

    async def _login(username: str):
        return await session.login(username, PASSWORD)

    return _login


@pytest.fixture()
def groups(api, session):
    return GroupCache(api, session)


@pytest.fixture()
def events(api, session):
    return EventCache(api, session, clock=lambda: NOW)
