from __future__ import annotations

import base64
import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from eventscope import api
from eventscope.models import Event
from eventscope.utils import utcnow


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _iso(hours: float) -> str:
    return (utcnow() + timedelta(hours=hours)).replace(microsecond=0).isoformat()


def _create_user(client, username: str, **extra) -> str:
    response = client.post("/api/v1/users", json={"username": username, **extra})
    assert response.status_code == 201
    return response.json()["user"]["id"]


def _create_event(client, host: str, **payload) -> str:
    body = {"title": "Meetup", "start_time": _iso(24), **payload}
    response = client.post("/api/v1/events", json=body, headers={"X-User-Id": host})
    assert response.status_code == 201, response.text
    return response.json()["event"]["id"]


def _befriend(client, first: str, second: str) -> None:
    response = client.post(
        f"/api/v1/friends/{second}/request", headers={"X-User-Id": first}
    )
    assert response.status_code == 201
    response = client.post(
        f"/api/v1/friends/{first}/accept", headers={"X-User-Id": second}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "accepted"


def test_create_event_requires_user(client):
    response = client.post("/api/v1/events", json={"title": "x", "start_time": _iso(1)})
    assert response.status_code == 401
    assert response.json()["detail"] == "Missing X-User-Id header"


def test_create_event_rejects_unknown_tier(client):
    host = _create_user(client, "host")
    response = client.post(
        "/api/v1/events",
        json={"title": "x", "start_time": _iso(1), "privacy_tier": "secret"},
        headers={"X-User-Id": host},
    )
    assert response.status_code == 400
    assert "secret" in response.json()["detail"]


def test_create_event_rejects_widening_override(client):
    host = _create_user(client, "host")
    response = client.post(
        "/api/v1/events",
        json={
            "title": "x",
            "start_time": _iso(1),
            "privacy_tier": "private",
            "overrides": {"can_view": "anyone"},
        },
        headers={"X-User-Id": host},
    )
    assert response.status_code == 400


def test_friends_event_visibility_over_http(client):
    host = _create_user(client, "host")
    user = _create_user(client, "user")
    event_id = _create_event(client, host, privacy_tier="friends")

    response = client.get(f"/api/v1/events/{event_id}", headers={"X-User-Id": user})
    assert response.status_code == 404

    check = client.get(
        f"/api/v1/events/{event_id}/permissions/view", headers={"X-User-Id": user}
    )
    assert check.json() == {"event_id": event_id, "action": "view", "allowed": False}

    _befriend(client, host, user)
    response = client.get(f"/api/v1/events/{event_id}", headers={"X-User-Id": user})
    assert response.status_code == 200
    assert response.json()["event"]["privacy_tier"] == "friends"
    assert response.json()["event"]["attendee_ids"] == []


def test_permission_summary_endpoint(client):
    host = _create_user(client, "host")
    attendee = _create_user(client, "attendee")
    event_id = _create_event(client, host)
    joined = client.post(f"/api/v1/events/{event_id}/join", headers={"X-User-Id": attendee})
    assert joined.json() == {"event_id": event_id, "role": "attendee"}

    response = client.get(
        f"/api/v1/events/{event_id}/permissions", headers={"X-User-Id": attendee}
    )
    assert response.status_code == 200
    assert response.json()["permissions"] == {
        "view": True,
        "join": True,
        "invite": True,
        "share": True,
        "view_attendees": True,
        "view_photos": True,
    }
    missing = client.get("/api/v1/events/missing/permissions")
    assert missing.status_code == 404


def test_private_event_invitations(client):
    host = _create_user(client, "host")
    attendee = _create_user(client, "attendee")
    friend = _create_user(client, "friend")
    event_id = _create_event(client, host, privacy_tier="private")

    response = client.post(
        f"/api/v1/events/{event_id}/invitations",
        json={"user_ids": [attendee]},
        headers={"X-User-Id": host},
    )
    assert response.status_code == 201
    assert response.json()["invited"] == [attendee]

    client.post(f"/api/v1/events/{event_id}/join", headers={"X-User-Id": attendee})
    response = client.post(
        f"/api/v1/events/{event_id}/invitations",
        json={"user_ids": [friend]},
        headers={"X-User-Id": attendee},
    )
    assert response.status_code == 403

    denied = client.post(f"/api/v1/events/{event_id}/join", headers={"X-User-Id": friend})
    assert denied.status_code == 403


def test_privacy_change_and_overrides(client):
    host = _create_user(client, "host")
    user = _create_user(client, "user")
    event_id = _create_event(client, host)

    forbidden = client.post(
        f"/api/v1/events/{event_id}/privacy",
        json={"privacy_tier": "private"},
        headers={"X-User-Id": user},
    )
    assert forbidden.status_code == 403

    response = client.put(
        f"/api/v1/events/{event_id}/overrides",
        json={"can_join": "approval-required", "appear_in_feed": False},
        headers={"X-User-Id": host},
    )
    assert response.status_code == 200
    assert response.json()["overrides"] == {
        "can_join": "approval-required",
        "appear_in_feed": False,
    }
    requested = client.post(f"/api/v1/events/{event_id}/join", headers={"X-User-Id": user})
    assert requested.json()["role"] == "requested"

    changed = client.post(
        f"/api/v1/events/{event_id}/privacy",
        json={"privacy_tier": "private"},
        headers={"X-User-Id": host},
    )
    assert changed.status_code == 200
    assert changed.json()["event"]["privacy_tier"] == "private"
    response = client.get(f"/api/v1/events/{event_id}", headers={"X-User-Id": user})
    assert response.status_code == 404


def test_guest_pass_flow(client):
    host = _create_user(client, "host")
    event_id = _create_event(client, host, privacy_tier="private")

    assert client.get(f"/api/v1/events/{event_id}").status_code == 404
    response = client.post(
        f"/api/v1/events/{event_id}/guest-passes",
        json={"guest_name": "Robin"},
        headers={"X-User-Id": host},
    )
    assert response.status_code == 201
    token = response.json()["token"]

    by_header = client.get(f"/api/v1/events/{event_id}", headers={"X-Guest-Token": token})
    assert by_header.status_code == 200
    by_query = client.get(f"/api/v1/events/{event_id}", params={"guest_token": token})
    assert by_query.status_code == 200

    blank = client.post(
        f"/api/v1/events/{event_id}/guest-passes",
        json={"guest_name": " "},
        headers={"X-User-Id": host},
    )
    assert blank.status_code == 400


def test_discover_search_and_feed(client):
    host = _create_user(client, "host")
    viewer = _create_user(client, "viewer", interests=["music"])
    public_id = _create_event(client, host, title="Jazz night", category="music")
    _create_event(client, host, title="Secret jazz", privacy_tier="private")
    later_id = _create_event(client, host, title="Hike", start_time=_iso(24 * 40))

    discover = client.get("/api/v1/discover", headers={"X-User-Id": viewer})
    assert [event["id"] for event in discover.json()["events"]] == [public_id, later_id]

    music = client.get("/api/v1/discover", params={"category": "Music"})
    assert [event["id"] for event in music.json()["events"]] == [public_id]

    search = client.get("/api/v1/search", params={"q": "jazz"}, headers={"X-User-Id": viewer})
    assert search.json()["query"] == "jazz"
    assert [event["id"] for event in search.json()["events"]] == [public_id]

    feed = client.get("/api/v1/feed", params={"per_page": 1}, headers={"X-User-Id": viewer})
    assert feed.status_code == 200
    body = feed.json()
    assert [item["event"]["id"] for item in body["events"]] == [public_id]
    assert body["events"][0]["signals"]["interest"] == 5.0
    assert body["pagination"]["has_next"] is True

    next_page = client.get(
        "/api/v1/feed",
        params={"per_page": 1, "cursor": body["pagination"]["next_cursor"]},
        headers={"X-User-Id": viewer},
    )
    assert [item["event"]["id"] for item in next_page.json()["events"]] == [later_id]
    assert next_page.json()["pagination"]["next_cursor"] is None

    bad_cursor = client.get("/api/v1/feed", params={"cursor": "nope"})
    assert bad_cursor.status_code == 400

    offset_cursor = base64.urlsafe_b64encode(
        json.dumps([0, "2000-01-01T00:00:00+00:00", ""]).encode("utf-8")
    ).decode("ascii")
    from_offset = client.get(
        "/api/v1/feed", params={"cursor": offset_cursor}, headers={"X-User-Id": viewer}
    )
    assert from_offset.status_code == 200


def test_profile_events_endpoint(client):
    owner = _create_user(client, "owner")
    viewer = _create_user(client, "viewer")
    public_id = _create_event(client, owner)
    _create_event(client, owner, privacy_tier="private")

    response = client.get(f"/api/v1/users/{owner}/events", headers={"X-User-Id": viewer})
    assert [event["id"] for event in response.json()["events"]] == [public_id]
    assert client.get("/api/v1/users/missing/events").status_code == 404


def test_malformed_event_reports_inconsistent_state(client, session):
    session.add(Event(id="orphan", host_id=None, title="Orphan", start_time=utcnow()))
    session.commit()
    response = client.get("/api/v1/events/orphan")
    assert response.status_code == 500
    assert response.json()["detail"] == "Event data is inconsistent"


def test_self_friend_request_is_rejected(client):
    user = _create_user(client, "solo")
    response = client.post(f"/api/v1/friends/{user}/request", headers={"X-User-Id": user})
    assert response.status_code == 400
