"""Events and attendance resource cache.

Status lifecycle (forward only):

    draft --publish--> published --start--> in_progress --end--> completed

``draft -> published`` is the only manual transition. The other two are
driven by the clock: ``refresh_statuses`` compares each cached event's
window with ``now`` and writes any advance back to the API so other
viewers converge. A local copy is patched only after the write succeeds,
so a failed write is retried on the next tick.

Check-in is allowed while an event is ``published`` or ``in_progress``.
The attendance count shown to users is ``len(attendance)`` from the
attendance endpoint, never a counter embedded in the event.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple, Union

from ..api_client import FellowshipClient
from ..core.config import settings
from ..exceptions import (
    ConflictError,
    FellowshipError,
    InvalidStateError,
    PermissionDeniedError,
    ValidationError,
)
from ..schemas import AttendanceRecord, Event, EventStatus, LeaderRef, Person, TeamMember, TEAM_FIELDS
from ..schemas.common import normalize_ref_id
from . import permission_service
from .base import ResourceCache
from .session import SessionStore
from .timers import PeriodicTask, ViewScope
from .validation import raise_for_errors, validate_event_data, validate_newcomer_data

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

CHECK_IN_OPEN_STATUSES = (EventStatus.PUBLISHED, EventStatus.IN_PROGRESS)
MANUAL_STATUSES = (EventStatus.DRAFT, EventStatus.PUBLISHED)
MANAGE_EVENTS = "manage_events"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def next_status(event: Event, now: datetime) -> EventStatus:
    """Return the status *event* should have at *now*.

    Drafts never move on their own, and the result is never behind the
    current status.
    """
    current = event.status
    if current not in CHECK_IN_OPEN_STATUSES:
        return current
    if now >= event.end_date_time:
        target = EventStatus.COMPLETED
    elif now >= event.start_date_time:
        target = EventStatus.IN_PROGRESS
    else:
        target = current
    return target if target.rank > current.rank else current


def is_check_in_open(event: Optional[Event]) -> bool:
    return event is not None and event.status in CHECK_IN_OPEN_STATUSES


def manual_status_controls_enabled(event: Event) -> bool:
    """Draft/published controls are disabled once the clock has moved the event on."""
    return event.status in MANUAL_STATUSES


def team_exclusion_ids(event: Event, skip_team: Optional[str] = None) -> Set[str]:
    """Person ids already on a team roster, for filtering team-member search.

    A person may sit on at most one of the three teams.
    """
    excluded: Set[str] = set()
    for team in TEAM_FIELDS:
        if team == skip_team:
            continue
        excluded.update(member.person for member in getattr(event, team))
    return excluded


def assign_team_member(event: Event, team: str, person: Union[Person, TeamMember, str], name: str = "") -> Event:
    """Return a copy of *event* with *person* added to *team*.

    Raises:
        ValidationError: Unknown team, or the person is already on a team.
    """
    if team not in TEAM_FIELDS:
        raise ValidationError({team: f"Unknown team: {team}"})
    if isinstance(person, Person):
        member = TeamMember(person=person.id, person_name=name or person.full_name)
    elif isinstance(person, TeamMember):
        member = person
    else:
        member = TeamMember(person=person, person_name=name)

    if member.person in team_exclusion_ids(event):
        raise ValidationError({team: f"{member.person_name or member.person} is already assigned to a team"})
    return event.model_copy(update={team: [*getattr(event, team), member]})


def add_in_charge(event: Event, field_name: str, ref: Any) -> Event:
    """Return a copy of *event* with *ref* appended to an in-charge list."""
    if field_name not in ("event_in_charge", "check_in_in_charge"):
        raise ValidationError({field_name: f"Unknown in-charge list: {field_name}"})
    leader = LeaderRef.model_validate(ref)
    current = getattr(event, field_name)
    if any(existing.user_id == leader.user_id for existing in current):
        raise ValidationError({field_name: f"{leader.name or leader.user_id} is already assigned"})
    return event.model_copy(update={field_name: [*current, leader]})


class CheckInFailure(NamedTuple):
    person_id: str
    name: str
    message: str


@dataclass
class BulkCheckInResult:
    """Outcome of one bulk check-in; every selected person is accounted for."""
    checked_in: List[str] = field(default_factory=list)
    already_checked_in: List[str] = field(default_factory=list)
    failed: List[CheckInFailure] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.checked_in)

    @property
    def success_message(self) -> Optional[str]:
        if not self.checked_in:
            return None
        return f"Checked in {self.success_count} people"

    @property
    def conflict_message(self) -> Optional[str]:
        if not self.already_checked_in:
            return None
        return f"Person already checked in: {', '.join(self.already_checked_in)}"

    @property
    def failure_message(self) -> Optional[str]:
        if not self.failed:
            return None
        return f"Check-in failed for {len(self.failed)} people"

    @property
    def error_message(self) -> Optional[str]:
        """Conflict and failure summaries joined, or None when there are neither."""
        messages = [m for m in (self.conflict_message, self.failure_message) if m]
        return "; ".join(messages) or None


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class EventCache(ResourceCache):
    """Per-session cache of events, the focused event and its attendance."""

    name = "events"

    def __init__(self, api: FellowshipClient, session: SessionStore, clock: Optional[Clock] = None) -> None:
        self._clock = clock or _utcnow
        self.events: List[Event] = []
        self.filters: Dict[str, Any] = {}
        self.current_event: Optional[Event] = None
        self.attendance: List[AttendanceRecord] = []
        self.newcomers: List[Person] = []
        self.search_results: List[Person] = []
        super().__init__(api, session)

    @property
    def attendance_count(self) -> int:
        return len(self.attendance)

    def clear(self) -> None:
        self.events = []
        self.filters = {}
        self.current_event = None
        self.attendance = []
        self.newcomers = []
        self.search_results = []
        self.error = None

    def _replace_event(self, event: Event) -> None:
        self.events = [event if e.id == event.id else e for e in self.events]
        if self.current_event is not None and self.current_event.id == event.id:
            self.current_event = event

    def _require_manage(self) -> None:
        if not permission_service.check_permission(self.identity, MANAGE_EVENTS):
            raise PermissionDeniedError("manage events")

    def _require_check_in(self) -> Event:
        """Return the focused event if the identity may check people in now."""
        event = self.current_event
        if event is None:
            raise InvalidStateError("No event is loaded for check-in")
        if not permission_service.can_check_in(self.identity, event):
            raise PermissionDeniedError("check people in to this event")
        if not is_check_in_open(event):
            raise InvalidStateError(
                f"Check-in is not available while the event is {event.status.value}",
                state=event.status.value,
            )
        return event

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def fetch_events(self, filters: Optional[Dict[str, Any]] = None) -> bool:
        if filters is not None:
            self.filters = dict(filters)
        with self._operation("fetch_events") as generation:
            try:
                events = await self._api.events.get_all(self.filters)
            except FellowshipError as e:
                self._fail("Failed to load events", e)
                return False
            if not self._current(generation):
                return False
            self.events = events
            self.error = None
            return True

    async def fetch_event(self, event_id: str) -> Optional[Event]:
        with self._operation("fetch_event") as generation:
            try:
                event = await self._api.events.get_by_id(event_id)
            except FellowshipError as e:
                self._fail("Failed to load event", e)
                return None
            if not self._current(generation):
                return None
            if self.current_event is None or self.current_event.id != event.id:
                self.attendance = []
                self.newcomers = []
                self.search_results = []
            self.current_event = event
            self.error = None
            return event

    async def create_event(self, data: Any) -> Optional[Event]:
        """Create an event.

        Raises:
            ValidationError: Required fields missing or end not after start.
            PermissionDeniedError: The identity lacks ``manage_events``.
        """
        self._require_manage()
        raise_for_errors(validate_event_data(data))
        with self._operation("create_event") as generation:
            try:
                event = await self._api.events.create(data)
            except FellowshipError as e:
                self._fail("Failed to create event", e)
                return None
            if not self._current(generation):
                return None
            self.events = [*self.events, event]
            self.error = None
            logger.info("Event created", extra={"event_id": event.id})
            return event

    async def update_event(self, event_id: str, data: Any) -> Optional[Event]:
        self._require_manage()
        raise_for_errors(validate_event_data(data))
        with self._operation("update_event") as generation:
            try:
                event = await self._api.events.update(event_id, data)
            except FellowshipError as e:
                self._fail("Failed to update event", e)
                return None
            if not self._current(generation):
                return None
            self._replace_event(event)
            self.error = None
            return event

    async def delete_event(self, event_id: str) -> bool:
        self._require_manage()
        with self._operation("delete_event") as generation:
            try:
                await self._api.events.delete(event_id)
            except FellowshipError as e:
                self._fail("Failed to delete event", e)
                return False
            if not self._current(generation):
                return False
            if self.current_event is not None and self.current_event.id == event_id:
                self.current_event = None
                self.attendance = []
            await self.fetch_events()
            return True

    async def publish_event(self, event_id: str) -> Optional[Event]:
        """Move a draft event to published.

        Raises:
            InvalidStateError: The event is no longer a draft.
            ValidationError: The event lacks its required in-charge roles.
        """
        self._require_manage()
        event = self._find(event_id)
        if event is None:
            event = await self.fetch_event(event_id)
            if event is None:
                return None
        if event.status is not EventStatus.DRAFT:
            raise InvalidStateError("Only draft events can be published", state=event.status.value)
        raise_for_errors(validate_event_data(event))

        with self._operation("publish_event") as generation:
            try:
                await self._api.events.update(event_id, {"status": EventStatus.PUBLISHED.value})
            except FellowshipError as e:
                self._fail("Failed to publish event", e)
                return None
            if not self._current(generation):
                return None
            published = event.model_copy(update={"status": EventStatus.PUBLISHED})
            self._replace_event(published)
            self.error = None
            return published

    def _find(self, event_id: str) -> Optional[Event]:
        if self.current_event is not None and self.current_event.id == event_id:
            return self.current_event
        return next((e for e in self.events if e.id == event_id), None)

    async def refresh_statuses(
        self,
        now: Optional[datetime] = None,
        event_ids: Optional[Iterable[str]] = None,
    ) -> List[Tuple[str, EventStatus]]:
        """Advance cached events whose window has been reached and persist it.

        Returns:
            ``(event_id, new_status)`` for every advance the API accepted.
        """
        now = now or self._clock()
        wanted = set(event_ids) if event_ids is not None else None

        candidates: Dict[str, Event] = {e.id: e for e in self.events}
        if self.current_event is not None:
            candidates.setdefault(self.current_event.id, self.current_event)

        advanced: List[Tuple[str, EventStatus]] = []
        with self._operation("refresh_statuses") as generation:
            for event_id, event in candidates.items():
                if wanted is not None and event_id not in wanted:
                    continue
                target = next_status(event, now)
                if target is event.status:
                    continue
                try:
                    await self._api.events.update(event_id, {"status": target.value})
                except FellowshipError as e:
                    logger.warning(
                        "Could not persist status %s for event %s: %s", target.value, event_id, e.message,
                    )
                    continue
                if not self._current(generation):
                    return advanced
                logger.info(
                    "Event status advanced",
                    extra={"event_id": event_id, "from": event.status.value, "to": target.value},
                )
                latest = self._find(event_id) or event
                self._replace_event(latest.model_copy(update={"status": target}))
                advanced.append((event_id, target))
        return advanced

    # ------------------------------------------------------------------
    # Attendance
    # ------------------------------------------------------------------

    async def fetch_attendance(self) -> bool:
        event = self.current_event
        if event is None:
            return False
        with self._operation("fetch_attendance") as generation:
            try:
                records = await self._api.events.get_attendance(event.id)
            except FellowshipError as e:
                self._fail("Failed to load attendance", e)
                return False
            if not self._current(generation):
                return False
            self.attendance = records
            return True

    async def fetch_newcomers(self) -> bool:
        event = self.current_event
        if event is None:
            return False
        with self._operation("fetch_newcomers") as generation:
            try:
                people = await self._api.events.get_newcomers(event.id)
            except FellowshipError as e:
                self._fail("Failed to load newcomers", e)
                return False
            if not self._current(generation):
                return False
            self.newcomers = people
            return True

    async def search_attendees(self, phone: str) -> List[Person]:
        """Search people by phone fragment for the focused event.

        Fragments shorter than the configured minimum are ignored. Results
        are de-duplicated by person id, keeping the last occurrence's data
        at the first occurrence's position.
        """
        event = self.current_event
        phone = (phone or "").strip()
        if event is None or len(phone) < settings.attendee_search_min_chars:
            return self.search_results
        with self._operation("search_attendees") as generation:
            try:
                people = await self._api.events.search_attendees(event.id, phone)
            except FellowshipError as e:
                self._fail("Failed to search attendees", e)
                return self.search_results
            if not self._current(generation):
                return []
            unique: Dict[str, Person] = {}
            for person in people:
                unique[person.id] = person
            self.search_results = list(unique.values())
            return self.search_results

    def _checked_in_ids(self) -> Set[str]:
        return {record.person_id for record in self.attendance}

    async def check_in(self, person_id: str) -> bool:
        """Check one person in to the focused event.

        Raises:
            PermissionDeniedError: The identity may not run check-in.
            InvalidStateError: The event is not open for check-in.
            ConflictError: The person is already checked in.
        """
        event = self._require_check_in()
        person_id = normalize_ref_id(person_id)
        if person_id in self._checked_in_ids():
            raise ConflictError("Person already checked in", details={"person_id": person_id})

        with self._operation("check_in") as generation:
            try:
                await self._api.events.checkin(event.id, person_id, self.identity)
            except (ConflictError, PermissionDeniedError, InvalidStateError):
                raise
            except FellowshipError as e:
                self._fail("Check-in failed", e)
                return False
            if not self._current(generation):
                return False
            logger.info("Checked in", extra={"event_id": event.id, "person_id": person_id})
            await self.fetch_attendance()
            return True

    async def bulk_check_in(self, people: Sequence[Union[Person, str]]) -> BulkCheckInResult:
        """Check in every selected person, independently and in order.

        A failure for one person never stops the rest. Attendance is
        re-fetched only if at least one check-in succeeded.
        """
        event = self._require_check_in()
        result = BulkCheckInResult()
        already = self._checked_in_ids()

        with self._operation("bulk_check_in") as generation:
            for entry in people:
                person_id, name = self._describe(entry)
                if person_id in already:
                    result.already_checked_in.append(name)
                    continue
                try:
                    await self._api.events.checkin(event.id, person_id, self.identity)
                except ConflictError:
                    result.already_checked_in.append(name)
                    continue
                except FellowshipError as e:
                    logger.warning("Check-in failed for %s: %s", person_id, e.message)
                    result.failed.append(CheckInFailure(person_id, name, e.message))
                    continue
                result.checked_in.append(person_id)
                already.add(person_id)

            if not self._current(generation):
                return result
            logger.info(
                "Bulk check-in finished",
                extra={
                    "event_id": event.id,
                    "succeeded": result.success_count,
                    "already_checked_in": len(result.already_checked_in),
                    "failed": len(result.failed),
                },
            )
            if result.checked_in:
                await self.fetch_attendance()
            self.error = result.error_message
        return result

    def _describe(self, entry: Union[Person, str]) -> Tuple[str, str]:
        if isinstance(entry, Person):
            return entry.id, entry.full_name
        person_id = normalize_ref_id(entry) or ""
        person = next((p for p in self.search_results if p.id == person_id), None)
        return person_id, person.full_name if person else "Unknown person"

    async def register_newcomer(self, data: Dict[str, Any]) -> Optional[Person]:
        """Create a person and check them in to the focused event.

        The newcomers list changes only when both steps succeed.

        Raises:
            ValidationError: First name, last name or gender missing.
            PermissionDeniedError / InvalidStateError: As for ``check_in``.
        """
        raise_for_errors(validate_newcomer_data(data))
        event = self._require_check_in()

        payload = dict(data)
        payload["eventId"] = event.id
        payload["eventRegistration"] = {
            "eventId": event.id,
            "registrationDate": self._clock().isoformat(),
        }

        with self._operation("register_newcomer") as generation:
            try:
                person = await self._api.people.quick_register(payload)
            except FellowshipError as e:
                self._fail("Failed to register person", e)
                return None
            try:
                await self._api.events.checkin(event.id, person.id, self.identity)
            except FellowshipError as e:
                self._fail("Person was registered but check-in failed", e)
                return None
            if not self._current(generation):
                return None
            self.newcomers = [*self.newcomers, person]
            self.error = None
            logger.info("Newcomer registered and checked in", extra={"event_id": event.id, "person_id": person.id})
            await self.fetch_attendance()
            return person

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def watch_event_list(self, scope: ViewScope) -> Tuple[PeriodicTask, PeriodicTask]:
        """Refresh the list and re-evaluate statuses while *scope* is open."""

        async def refresh() -> None:
            await self.fetch_events()

        async def statuses() -> None:
            await self.refresh_statuses()

        return (
            scope.every(settings.event_list_refresh_seconds, refresh, name="events"),
            scope.every(settings.event_status_poll_seconds, statuses, run_immediately=False, name="statuses"),
        )

    def watch_event(self, scope: ViewScope, event_id: str) -> PeriodicTask:
        """Advance one event's status while its page is open."""

        async def check() -> None:
            await self.refresh_statuses(event_ids=[event_id])

        return scope.every(settings.event_status_poll_seconds, check, name=f"event:{event_id}")
