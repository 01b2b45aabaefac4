"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================

Exercises the event routes through the TestClient against the in-memory
database (see the ``client`` fixture in conftest).

These tests verify:
- Caller identity via the X-User-Id header
- Service errors mapped to 404 / 403 / 409 / 422
- Response shapes for status, batches and join
"""

from __future__ import annotations

import pytest

ORGANIZER = {"X-User-Id": "organizer"}
MEMBER = {"X-User-Id": "member"}

EVENT_BODY = {
    "title": "Morning practice",
    "start_at": "2030-01-01T10:00:00Z",
    "phase_durations": {"arrival": 300, "practice": 1200, "close": 300},
}


def _create(client, **overrides) -> dict:
    resp = client.post("/api/events", json={**EVENT_BODY, **overrides}, headers=ORGANIZER)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ===========================================================================
# Identity
# ===========================================================================
class TestIdentity:
    @pytest.mark.parametrize("headers", [{}, {"X-User-Id": "   "}])
    def test_create_requires_user(self, client, headers):
        resp = client.post("/api/events", json=EVENT_BODY, headers=headers)
        assert resp.status_code == 401

    def test_join_requires_user(self, client):
        event = _create(client)
        assert client.post(f"/api/events/{event['id']}/join").status_code == 401


# ===========================================================================
# CRUD
# ===========================================================================
class TestCreateEvent:
    def test_defaults(self, client):
        event = _create(client)
        assert event["created_by"] == "organizer"
        assert event["capacity_per_batch"] == 21
        assert event["recurrence"]["type"] == "none"
        assert event["start_at"] == "2030-01-01T10:00:00+00:00"

    def test_monthly_by_weekday(self, client):
        event = _create(
            client,
            recurrence={"type": "monthly_day", "weekOfMonth": 3, "dayOfWeekForMonthly": 5},
        )
        assert event["recurrence_label"] == "Repeats monthly on the 3rd Friday"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"recurrence": {"type": "monthly_day", "weekOfMonth": 7}},
            {"recurrence": {"type": "daily", "interval": 0}},
            {"recurrence": {"type": "weekly", "daysOfWeek": [7]}},
            {"phase_durations": {"arrival": -1}},
            {"timezone": "Nowhere/Special"},
            {"start_at": "2030-01-01T10:00:00"},
            {"capacity_per_batch": 0},
            {"title": ""},
        ],
    )
    def test_invalid_input_rejected(self, client, overrides):
        resp = client.post("/api/events", json={**EVENT_BODY, **overrides}, headers=ORGANIZER)
        assert resp.status_code == 422


class TestReadEvents:
    def test_get_and_list(self, client):
        event = _create(client)
        _create(client, title="Evening practice", start_at="2030-01-02T18:00:00Z")

        assert client.get(f"/api/events/{event['id']}").json()["title"] == "Morning practice"
        titles = [e["title"] for e in client.get("/api/events").json()["events"]]
        assert titles == ["Morning practice", "Evening practice"]

    def test_list_filtered_by_organizer(self, client):
        _create(client)
        resp = client.get("/api/events", params={"created_by": "someone-else"})
        assert resp.json() == {"events": []}

    def test_unknown_event_404(self, client):
        assert client.get("/api/events/missing").status_code == 404


class TestUpdateEvent:
    def test_organizer_updates(self, client):
        event = _create(client)
        resp = client.put(
            f"/api/events/{event['id']}",
            json={"title": "Renamed", "recurrence": {"type": "daily", "interval": 2}},
            headers=ORGANIZER,
        )
        assert resp.status_code == 200
        assert resp.json()["title"] == "Renamed"
        assert resp.json()["recurrence_label"] == "Repeats every 2 day(s)"

    def test_empty_body_400(self, client):
        event = _create(client)
        resp = client.put(f"/api/events/{event['id']}", json={}, headers=ORGANIZER)
        assert resp.status_code == 400

    def test_non_organizer_403(self, client):
        event = _create(client)
        resp = client.put(f"/api/events/{event['id']}", json={"title": "x"}, headers=MEMBER)
        assert resp.status_code == 403

    def test_live_event_409(self, client):
        # Back-to-back day-long occurrences: always live
        event = _create(
            client,
            start_at="2020-01-01T00:00:00Z",
            phase_durations={"practice": 86400},
            recurrence={"type": "daily"},
        )
        resp = client.put(f"/api/events/{event['id']}", json={"title": "x"}, headers=ORGANIZER)
        assert resp.status_code == 409

    def test_clearing_required_field_422(self, client):
        event = _create(client)
        resp = client.put(
            f"/api/events/{event['id']}", json={"start_at": None}, headers=ORGANIZER,
        )
        assert resp.status_code == 422


class TestDeleteEvent:
    def test_organizer_deletes(self, client):
        event = _create(client)
        resp = client.delete(f"/api/events/{event['id']}", headers=ORGANIZER)
        assert resp.status_code == 204
        assert client.get(f"/api/events/{event['id']}").status_code == 404

    def test_non_organizer_403(self, client):
        event = _create(client)
        resp = client.delete(f"/api/events/{event['id']}", headers=MEMBER)
        assert resp.status_code == 403


# ===========================================================================
# Status
# ===========================================================================
class TestEventStatus:
    def test_live_practice(self, client):
        event = _create(client)
        resp = client.get(
            f"/api/events/{event['id']}/status", params={"at": "2030-01-01T10:10:00Z"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["phase"] == "practice"
        assert data["is_live"] is True
        assert data["chat_enabled"] is False
        assert data["phase_remaining_seconds"] == 900

    def test_upcoming(self, client):
        event = _create(client)
        data = client.get(
            f"/api/events/{event['id']}/status", params={"at": "2030-01-01T09:00:00Z"},
        ).json()
        assert data["next_occurrence"] == "2030-01-01T10:00:00+00:00"
        assert data["countdown_label"] == "1h 0m 0s"

    def test_unknown_event_404(self, client):
        assert client.get("/api/events/missing/status").status_code == 404


# ===========================================================================
# Batches
# ===========================================================================
class TestBatches:
    def test_join_and_list(self, client):
        event = _create(client)
        resp = client.post(f"/api/events/{event['id']}/join", headers=MEMBER)
        assert resp.status_code == 200
        assert resp.json() == {
            "batch_number": 1,
            "already_member": False,
            "opens_new_batch": True,
            "overflow": False,
        }

        again = client.post(f"/api/events/{event['id']}/join", headers=MEMBER)
        assert again.json()["already_member"] is True

        listing = client.get(f"/api/events/{event['id']}/batches").json()
        assert listing == {
            "event_id": event["id"],
            "batches": [{"batch_number": 1, "size": 1, "joinable": True, "is_new": False}],
        }

    def test_fresh_event_offers_new_batch(self, client):
        event = _create(client)
        batches = client.get(f"/api/events/{event['id']}/batches").json()["batches"]
        assert batches == [{"batch_number": 1, "size": 0, "joinable": True, "is_new": True}]

    def test_join_unknown_event_404(self, client):
        assert client.post("/api/events/missing/join", headers=MEMBER).status_code == 404
