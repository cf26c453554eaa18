"""Tests for the events cache: status lifecycle, publishing and event CRUD."""

import asyncio
from datetime import timedelta

import pytest

from fellowship.core.config import settings
from fellowship.exceptions import InvalidStateError, PermissionDeniedError, ValidationError
from fellowship.schemas import Event, EventStatus, Person
from fellowship.services.event_service import (
    add_in_charge,
    assign_team_member,
    is_check_in_open,
    manual_status_controls_enabled,
    next_status,
    team_exclusion_ids,
)
from fellowship.services.timers import ViewScope

from conftest import NOW


def _event(status="published", start=NOW - timedelta(hours=1), end=NOW + timedelta(hours=1), **extra):
    return Event.model_validate({
        "_id": "e-1",
        "name": "Service",
        "startDateTime": start,
        "endDateTime": end,
        "status": status,
        **extra,
    })


def _new_event_form(**overrides):
    form = {
        "name": "Youth Night",
        "startDateTime": (NOW + timedelta(days=1)).isoformat(),
        "endDateTime": (NOW + timedelta(days=1, hours=2)).isoformat(),
        "eventInCharge": [{"_id": "u-manager", "name": "Manager"}],
        "checkInInCharge": ["u-staff"],
    }
    form.update(overrides)
    return form


# ---------------------------------------------------------------------------
# Status lifecycle (pure)
# ---------------------------------------------------------------------------


class TestNextStatus:
    def test_published_before_start_stays(self):
        event = _event(start=NOW + timedelta(hours=1), end=NOW + timedelta(hours=2))
        assert next_status(event, NOW) is EventStatus.PUBLISHED

    def test_published_moves_to_in_progress_at_start(self):
        event = _event(start=NOW, end=NOW + timedelta(hours=1))
        assert next_status(event, NOW) is EventStatus.IN_PROGRESS

    def test_in_progress_completes_at_end(self):
        event = _event("in_progress", end=NOW)
        assert next_status(event, NOW) is EventStatus.COMPLETED

    def test_published_can_jump_straight_to_completed(self):
        event = _event(start=NOW - timedelta(hours=3), end=NOW - timedelta(hours=1))
        assert next_status(event, NOW) is EventStatus.COMPLETED

    def test_never_moves_backward(self):
        # Rescheduled into the future after it started.
        event = _event("in_progress", start=NOW + timedelta(hours=1), end=NOW + timedelta(hours=2))
        assert next_status(event, NOW) is EventStatus.IN_PROGRESS

    @pytest.mark.parametrize("status", ["draft", "completed"])
    def test_draft_and_completed_never_move(self, status):
        event = _event(status, start=NOW - timedelta(hours=3), end=NOW - timedelta(hours=1))
        assert next_status(event, NOW) is EventStatus(status)

    @pytest.mark.parametrize("status,open_", [
        ("draft", False), ("published", True), ("in_progress", True), ("completed", False),
    ])
    def test_check_in_window(self, status, open_):
        assert is_check_in_open(_event(status)) is open_

    def test_no_event_is_closed(self):
        assert is_check_in_open(None) is False

    @pytest.mark.parametrize("status,enabled", [
        ("draft", True), ("published", True), ("in_progress", False), ("completed", False),
    ])
    def test_manual_controls(self, status, enabled):
        assert manual_status_controls_enabled(_event(status)) is enabled


# ---------------------------------------------------------------------------
# Team rosters and in-charge lists (pure)
# ---------------------------------------------------------------------------


class TestTeams:
    def test_exclusion_spans_all_teams(self):
        event = _event(
            welcomeTeam=[{"person": "p-1"}],
            cafeTeam=[{"person": {"_id": "p-2"}}],
            mediaTeam=[{"person": "p-3"}],
        )
        assert team_exclusion_ids(event) == {"p-1", "p-2", "p-3"}
        assert team_exclusion_ids(event, skip_team="cafe_team") == {"p-1", "p-3"}

    def test_assign_returns_copy(self):
        event = _event()
        person = Person.model_validate({"_id": "p-1", "firstName": "Ann", "lastName": "Lee"})

        updated = assign_team_member(event, "welcome_team", person)

        assert [m.person for m in updated.welcome_team] == ["p-1"]
        assert updated.welcome_team[0].person_name == "Ann Lee"
        assert event.welcome_team == []

    def test_person_on_another_team_rejected(self):
        event = _event(cafeTeam=[{"person": "p-1", "personName": "Ann Lee"}])
        with pytest.raises(ValidationError) as exc_info:
            assign_team_member(event, "media_team", "p-1", "Ann Lee")
        assert "already assigned" in exc_info.value.errors["media_team"]

    def test_unknown_team_rejected(self):
        with pytest.raises(ValidationError):
            assign_team_member(_event(), "choir_team", "p-1")

    def test_add_in_charge_accepts_any_reference_shape(self):
        event = _event(checkInInCharge=["u-1"])
        updated = add_in_charge(event, "check_in_in_charge", {"userId": "u-2", "name": "Two"})
        assert updated.check_in_in_charge_ids == {"u-1", "u-2"}

    def test_add_in_charge_rejects_duplicate(self):
        event = _event(checkInInCharge=[{"_id": "u-1"}])
        with pytest.raises(ValidationError):
            add_in_charge(event, "check_in_in_charge", "u-1")


# ---------------------------------------------------------------------------
# Event reads and writes
# ---------------------------------------------------------------------------


class TestEventReads:
    async def test_fetch_events_with_filters(self, events, login_as, backend):
        await login_as("member")
        await events.fetch_events({"status": "published"})
        assert {e.id for e in events.events} == {"e-open", "e-later"}
        assert events.filters == {"status": "published"}

        # Later refreshes reuse the stored filters.
        await events.fetch_events()
        assert {e.id for e in events.events} == {"e-open", "e-later"}

    async def test_failed_fetch_keeps_list(self, events, login_as, backend):
        await login_as("member")
        await events.fetch_events()
        backend.fail("GET", "/events", 500)
        assert await events.fetch_events() is False
        assert len(events.events) == 4
        assert events.error == "Failed to load events"

    async def test_switching_event_resets_attendance(self, events, login_as):
        await login_as("staff")
        await events.fetch_event("e-open")
        await events.check_in("p-1")
        assert events.attendance_count == 1

        await events.fetch_event("e-open")
        assert events.attendance_count == 1

        await events.fetch_event("e-later")
        assert events.attendance == []
        assert events.current_event.id == "e-later"

    async def test_in_charge_shapes_normalized(self, events, login_as):
        await login_as("member")
        event = await events.fetch_event("e-open")
        assert event.check_in_in_charge_ids == {"u-leader", "u-x", "u-y"}


class TestEventWrites:
    async def test_create_requires_manage_events(self, events, login_as, backend):
        await login_as("member")
        with pytest.raises(PermissionDeniedError) as exc_info:
            await events.create_event(_new_event_form())
        assert str(exc_info.value) == "You do not have permission to manage events"
        assert backend.count("POST", "/events") == 0

    async def test_create_validates_before_sending(self, events, login_as, backend):
        await login_as("manager")
        form = _new_event_form(endDateTime=(NOW + timedelta(hours=23)).isoformat(), checkInInCharge=[])
        with pytest.raises(ValidationError) as exc_info:
            await events.create_event(form)
        assert exc_info.value.errors == {
            "endDateTime": "End date & time must be after the start",
            "checkInInCharge": "At least one check-in in-charge is required",
        }
        assert backend.count("POST", "/events") == 0

    async def test_recurring_needs_frequency_and_days(self, events, login_as):
        await login_as("manager")
        form = _new_event_form(isRecurring=True, recurringDetails={"frequency": "", "days": []})
        with pytest.raises(ValidationError) as exc_info:
            await events.create_event(form)
        assert set(exc_info.value.errors) == {"frequency", "days"}

    async def test_create_appends(self, events, login_as):
        await login_as("manager")
        await events.fetch_events()
        created = await events.create_event(_new_event_form())
        assert created.status is EventStatus.DRAFT
        assert events.events[-1].id == created.id

    async def test_update_replaces_in_list_and_focus(self, events, login_as):
        await login_as("manager")
        await events.fetch_events()
        current = await events.fetch_event("e-later")
        form = current.model_dump(by_alias=True, mode="json")
        form["name"] = "Evening Prayer & Praise"

        updated = await events.update_event("e-later", form)

        assert updated.name == "Evening Prayer & Praise"
        assert events.current_event.name == "Evening Prayer & Praise"
        assert [e.name for e in events.events if e.id == "e-later"] == ["Evening Prayer & Praise"]

    async def test_delete_refetches_list(self, events, login_as, backend):
        await login_as("manager")
        await events.fetch_events()
        await events.fetch_event("e-later")
        list_fetches = backend.count("GET", "/events")

        assert await events.delete_event("e-later") is True

        assert backend.count("GET", "/events") == list_fetches + 1
        assert "e-later" not in {e.id for e in events.events}
        assert events.current_event is None


class TestPublish:
    async def test_publish_draft(self, events, login_as, backend):
        await login_as("manager")
        await events.fetch_events()

        published = await events.publish_event("e-draft")

        assert published.status is EventStatus.PUBLISHED
        assert backend.events["e-draft"]["status"] == "published"
        assert next(e for e in events.events if e.id == "e-draft").status is EventStatus.PUBLISHED

    @pytest.mark.parametrize("event_id", ["e-open", "e-done"])
    async def test_only_drafts_publish(self, events, login_as, backend, event_id):
        await login_as("manager")
        await events.fetch_events()
        with pytest.raises(InvalidStateError):
            await events.publish_event(event_id)
        assert backend.count("PUT", f"/events/{event_id}") == 0

    async def test_publish_loads_unknown_event(self, events, login_as):
        await login_as("manager")
        published = await events.publish_event("e-draft")
        assert published.status is EventStatus.PUBLISHED

    async def test_publish_requires_manage_events(self, events, login_as):
        await login_as("staff")
        with pytest.raises(PermissionDeniedError):
            await events.publish_event("e-draft")


# ---------------------------------------------------------------------------
# Clock-driven status refresh
# ---------------------------------------------------------------------------


class TestRefreshStatuses:
    async def test_advances_and_persists(self, events, login_as, backend):
        await login_as("member")
        await events.fetch_events()

        advanced = await events.refresh_statuses()

        assert advanced == [("e-open", EventStatus.IN_PROGRESS)]
        assert backend.events["e-open"]["status"] == "in_progress"
        statuses = {e.id: e.status for e in events.events}
        assert statuses == {
            "e-open": EventStatus.IN_PROGRESS,
            "e-later": EventStatus.PUBLISHED,
            "e-draft": EventStatus.DRAFT,
            "e-done": EventStatus.COMPLETED,
        }
        assert backend.count("PUT", "/events/e-open") == 1

    async def test_nothing_to_do_sends_nothing(self, events, login_as, backend):
        await login_as("member")
        await events.fetch_events()
        await events.refresh_statuses()
        puts = [c for c in backend.calls if c[0] == "PUT"]

        assert await events.refresh_statuses() == []
        assert [c for c in backend.calls if c[0] == "PUT"] == puts

    async def test_failed_write_leaves_cache_unchanged(self, events, login_as, backend):
        await login_as("member")
        await events.fetch_events()
        backend.fail("PUT", "/events/e-open", 500)

        assert await events.refresh_statuses() == []
        assert next(e for e in events.events if e.id == "e-open").status is EventStatus.PUBLISHED

        backend.heal()
        assert await events.refresh_statuses() == [("e-open", EventStatus.IN_PROGRESS)]

    async def test_later_clock_completes_events(self, events, login_as):
        await login_as("member")
        await events.fetch_events()
        advanced = dict(await events.refresh_statuses(now=NOW + timedelta(hours=9)))
        assert advanced == {"e-open": EventStatus.COMPLETED, "e-later": EventStatus.COMPLETED}

    async def test_focused_event_advances(self, events, login_as):
        await login_as("member")
        await events.fetch_event("e-open")
        await events.refresh_statuses(event_ids=["e-open"])
        assert events.current_event.status is EventStatus.IN_PROGRESS

    async def test_watch_event_polls_while_open(self, events, login_as, monkeypatch):
        monkeypatch.setattr(settings, "event_status_poll_seconds", 0.02)
        await login_as("member")
        await events.fetch_event("e-open")

        async with ViewScope("event-page") as scope:
            events.watch_event(scope, "e-open")
            await asyncio.sleep(0.05)

        assert events.current_event.status is EventStatus.IN_PROGRESS

    async def test_watch_event_list_refreshes_and_advances(self, events, login_as, backend, monkeypatch):
        monkeypatch.setattr(settings, "event_list_refresh_seconds", 0.02)
        monkeypatch.setattr(settings, "event_status_poll_seconds", 0.02)
        await login_as("member")

        async with ViewScope("event-list") as scope:
            list_task, status_task = events.watch_event_list(scope)
            await asyncio.sleep(0.07)

        assert not list_task.running and not status_task.running
        assert backend.count("GET", "/events") >= 2
        assert next(e for e in events.events if e.id == "e-open").status is EventStatus.IN_PROGRESS
