from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from eventpass import api, notify
from eventpass.membership import JoinRequest, invite_guest, join_event
from eventpass.models import Event, GuestEvent, NotificationLog, ScheduleItem
from eventpass.utils import utcnow


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _iso(dt) -> str:
    return dt.replace(microsecond=0).isoformat()


@pytest.fixture()
def people(make_user):
    return {
        "alice": make_user("alice@x.com", "Alice", auth_uid="alice-token"),
        "bob": make_user("bob@x.com", "Bob", auth_uid="bob-token"),
        "carol": make_user("carol@x.com", "Carol", auth_uid="carol-token"),
    }


def test_register_links_bearer_subject(client):
    response = client.post(
        "/api/v1/auth/register",
        json={"email": "Dana@X.com", "name": "Dana"},
        headers=_auth("dana-token"),
    )
    assert response.status_code == 200
    user = response.json()["user"]
    assert user["email"] == "dana@x.com"

    again = client.post(
        "/api/v1/auth/register", json={"name": "Dana B"}, headers=_auth("dana-token")
    )
    assert again.json()["user"]["id"] == user["id"]
    assert again.json()["user"]["name"] == "Dana B"


def test_register_requires_token(client):
    response = client.post("/api/v1/auth/register", json={"email": "x@x.com"})
    assert response.status_code == 401
    assert response.json()["error"] == "LoginRequired"


def test_register_cannot_claim_someone_elses_email(client, people, make_event):
    event = make_event(people["alice"], visibility="PRIVATE")
    own = client.post(
        "/api/v1/auth/register",
        json={"email": "mallory@x.com"},
        headers=_auth("mallory-token"),
    )
    assert own.status_code == 200

    stolen = client.post(
        "/api/v1/auth/register",
        json={"email": "alice@x.com"},
        headers=_auth("mallory-token"),
    )
    assert stolen.status_code == 409
    assert stolen.json()["error"] == "Conflict"

    deleted = client.delete(f"/api/v1/events/{event.id}", headers=_auth("mallory-token"))
    assert deleted.status_code == 403
    owner_view = client.get(f"/api/v1/events/{event.id}", headers=_auth("alice-token"))
    assert owner_view.status_code == 200


def test_register_adopts_guest_provisioned_by_join(client, people, make_event):
    event = make_event(people["alice"])
    joined = client.post(
        "/api/v1/guest-events/join",
        json={"event_id": event.id, "email": "walkin@x.com", "name": "Walk In"},
    )
    guest_id = joined.json()["guest_event"]["user"]["id"]

    response = client.post(
        "/api/v1/auth/register",
        json={"email": "walkin@x.com"},
        headers=_auth("walkin-token"),
    )
    assert response.status_code == 200
    assert response.json()["user"]["id"] == guest_id

    mine = client.get("/api/v1/guest-events/mine", headers=_auth("walkin-token")).json()
    assert [row["event"]["id"] for row in mine["guest_events"]] == [event.id]


def test_join_cannot_enroll_another_account(client, people, make_event):
    event = make_event(people["alice"])

    by_email = client.post(
        "/api/v1/guest-events/join",
        json={"event_id": event.id, "email": "bob@x.com"},
    )
    assert by_email.status_code == 409
    by_id = client.post(
        "/api/v1/guest-events/join",
        json={"event_id": event.id, "user_id": people["bob"].id},
        headers=_auth("carol-token"),
    )
    assert by_id.status_code == 403

    own_email = client.post(
        "/api/v1/guest-events/join",
        json={"event_id": event.id, "email": "bob@x.com"},
        headers=_auth("bob-token"),
    )
    assert own_email.status_code == 201
    assert own_email.json()["guest_event"]["user"]["id"] == people["bob"].id


def test_create_event_with_clock_times_and_schedule(client, people):
    start = (utcnow() + timedelta(days=3)).replace(hour=0, minute=0, second=0, microsecond=0)
    response = client.post(
        "/api/v1/events",
        json={
            "name": "Garden Wedding",
            "start_date": _iso(start),
            "end_date": _iso(start),
            "start_time": "2:00 PM",
            "end_time": "11:00 PM",
            "venue": {
                "name": "Rose Hall",
                "address": "1 Main St",
                "city": "Springfield",
                "state": "IL",
                "zip_code": "62701",
            },
            "event_type": "wedding",
            "visibility": "unlisted",
            "schedule_items": [
                {"title": "Ceremony", "start_time": "3:00 PM", "end_time": "4:00 PM"},
                {"title": "Dinner", "start_time": "6:00 PM", "end_time": "8:00 PM"},
            ],
        },
        headers=_auth("alice-token"),
    )
    assert response.status_code == 201
    event = response.json()["event"]
    assert len(event["short_code"]) == 8
    assert event["visibility"] == "UNLISTED"
    assert event["event_type"] == "WEDDING"
    assert event["location"] == "Rose Hall, 1 Main St, Springfield, IL, 62701"
    assert event["start_date"].endswith("T14:00:00")
    assert event["end_date"].endswith("T23:00:00")
    assert [item["title"] for item in event["schedule_items"]] == ["Ceremony", "Dinner"]
    assert [item["order_index"] for item in event["schedule_items"]] == [0, 1]
    assert event["is_owner"] is True
    assert event["guest_count"] == 0


def test_create_event_is_atomic_with_schedule_items(client, session, people):
    start = utcnow() + timedelta(days=2)
    response = client.post(
        "/api/v1/events",
        json={
            "name": "Half Built",
            "start_date": _iso(start),
            "end_date": _iso(start + timedelta(hours=4)),
            "schedule_items": [
                {
                    "title": "Doors",
                    "start_time": _iso(start),
                    "end_time": _iso(start + timedelta(hours=1)),
                },
                {
                    "title": "   ",
                    "start_time": _iso(start + timedelta(hours=1)),
                    "end_time": _iso(start + timedelta(hours=2)),
                },
            ],
        },
        headers=_auth("alice-token"),
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Schedule item title is required"

    events = session.scalars(select(Event).execution_options(include_deleted=True)).all()
    assert events == []
    assert session.scalars(select(ScheduleItem)).all() == []
    session.commit()


def test_create_event_validation_errors(client, people):
    start = utcnow() + timedelta(days=1)
    base = {"name": "Broken", "start_date": _iso(start)}

    response = client.post(
        "/api/v1/events",
        json={**base, "end_date": _iso(start - timedelta(hours=1))},
        headers=_auth("alice-token"),
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "end_date must be after start_date"

    response = client.post(
        "/api/v1/events",
        json={
            **base,
            "end_date": _iso(start + timedelta(hours=5)),
            "schedule_items": [
                {"title": "Backwards", "start_time": "5:00 PM", "end_time": "4:00 PM"}
            ],
        },
        headers=_auth("alice-token"),
    )
    assert response.status_code == 400
    assert "Backwards" in response.json()["detail"]

    response = client.post(
        "/api/v1/events",
        json={**base, "end_date": _iso(start + timedelta(hours=1)), "visibility": "hidden"},
        headers=_auth("alice-token"),
    )
    assert response.status_code == 400

    anonymous = client.post(
        "/api/v1/events", json={**base, "end_date": _iso(start + timedelta(hours=1))}
    )
    assert anonymous.status_code == 401


def test_event_detail_respects_visibility(client, people, make_event):
    alice = people["alice"]
    public = make_event(alice, name="Open House")
    unlisted = make_event(alice, visibility="UNLISTED", name="Quiet Dinner")
    private = make_event(alice, visibility="PRIVATE", name="Board Retreat")

    assert client.get(f"/api/v1/events/{public.id}").status_code == 200
    assert client.get(f"/api/v1/events/{unlisted.id}").status_code == 404
    assert (
        client.get(f"/api/v1/events/{unlisted.id}", headers=_auth("bob-token")).status_code
        == 200
    )
    assert (
        client.get(f"/api/v1/events/{private.id}", headers=_auth("bob-token")).status_code
        == 404
    )
    owner_view = client.get(f"/api/v1/events/{private.id}", headers=_auth("alice-token"))
    assert owner_view.status_code == 200
    assert owner_view.json()["event"]["is_owner"] is True
    assert client.get("/api/v1/events/does-not-exist").status_code == 404


def test_short_code_lookup_gates_private_events(client, session, people, make_event):
    alice, bob = people["alice"], people["bob"]
    unlisted = make_event(alice, visibility="UNLISTED")
    private = make_event(alice, visibility="PRIVATE")

    by_code = client.get(f"/api/v1/events/code/{unlisted.short_code.lower()}")
    assert by_code.status_code == 200
    assert by_code.json()["event"]["id"] == unlisted.id

    anonymous = client.get(f"/api/v1/events/code/{private.short_code}")
    assert anonymous.status_code == 401
    stranger = client.get(
        f"/api/v1/events/code/{private.short_code}", headers=_auth("bob-token")
    )
    assert stranger.status_code == 403

    invite_guest(session, private, user_id=bob.id)
    session.commit()
    invited = client.get(
        f"/api/v1/events/code/{private.short_code}", headers=_auth("bob-token")
    )
    assert invited.status_code == 200
    assert invited.json()["event"]["membership"]["status"] == "INVITED"

    assert client.get("/api/v1/events/code/ZZZZ9999").status_code == 404


def test_list_events_filters_by_visibility_and_paginates(client, session, people, make_event):
    alice, bob = people["alice"], people["bob"]
    base = utcnow().replace(microsecond=0) + timedelta(days=1)
    for index in range(3):
        make_event(alice, name=f"Public {index}", start_date=base + timedelta(hours=index))
    make_event(alice, visibility="UNLISTED", name="Unlisted")
    private = make_event(alice, visibility="PRIVATE", name="Private")
    make_event(alice, visibility="PRIVATE", name="Other Private")
    invite_guest(session, private, user_id=bob.id)
    session.commit()

    anonymous = client.get("/api/v1/events").json()
    assert {event["name"] for event in anonymous["events"]} == {
        "Public 0",
        "Public 1",
        "Public 2",
    }

    as_bob = client.get("/api/v1/events", headers=_auth("bob-token")).json()
    assert {event["name"] for event in as_bob["events"]} == {
        "Public 0",
        "Public 1",
        "Public 2",
        "Unlisted",
        "Private",
    }

    as_alice = client.get("/api/v1/events", headers=_auth("alice-token")).json()
    assert as_alice["pagination"]["total_events"] == 6

    paged = client.get("/api/v1/events?per_page=2&page=2").json()
    assert [event["name"] for event in paged["events"]] == ["Public 2"]
    assert paged["pagination"]["has_prev"] is True
    assert paged["pagination"]["has_next"] is False

    searched = client.get("/api/v1/events", params={"q": "public 1"}).json()
    assert [event["name"] for event in searched["events"]] == ["Public 1"]


def test_discover_and_type_listings_only_show_public_events(client, people, make_event):
    alice = people["alice"]
    soon = utcnow().replace(microsecond=0) + timedelta(hours=6)
    make_event(alice, name="Fest", event_type="COLLEGE_FEST", start_date=soon)
    make_event(alice, visibility="UNLISTED", event_type="COLLEGE_FEST", name="Hidden Fest")
    make_event(
        alice,
        name="Later",
        start_date=soon + timedelta(days=30),
    )

    discover = client.get("/api/v1/events/discover").json()
    assert [event["name"] for event in discover["events"]] == ["Fest", "Later"]
    assert discover["events"][0]["guest_count"] == 0

    happening = client.get("/api/v1/events/happening-now").json()
    assert [event["name"] for event in happening["events"]] == ["Fest"]

    types = client.get("/api/v1/events/types").json()["types"]
    assert "COLLEGE_FEST" in types

    by_type = client.get("/api/v1/events/types/college_fest").json()
    assert [event["name"] for event in by_type["events"]] == ["Fest"]
    assert client.get("/api/v1/events/types/rave").status_code == 400


def test_join_by_code_and_leave(client, people, make_event):
    event = make_event(people["alice"])

    joined = client.post(
        "/api/v1/guest-events/join",
        json={"short_code": event.short_code},
        headers=_auth("bob-token"),
    )
    assert joined.status_code == 201
    body = joined.json()
    assert body["created"] is True
    assert body["guest_event"]["status"] == "JOINED"
    assert body["guest_event"]["user"]["email"] == "bob@x.com"
    assert body["event"]["id"] == event.id

    again = client.post(
        "/api/v1/guest-events/join",
        json={"event_id": event.id},
        headers=_auth("bob-token"),
    )
    assert again.status_code == 200
    assert again.json()["created"] is False
    assert again.json()["guest_event"]["id"] == body["guest_event"]["id"]

    mine = client.get("/api/v1/guest-events/mine", headers=_auth("bob-token")).json()
    assert [row["event"]["id"] for row in mine["guest_events"]] == [event.id]

    left = client.delete(f"/api/v1/guest-events/{event.id}", headers=_auth("bob-token"))
    assert left.status_code == 204
    missing = client.delete(f"/api/v1/guest-events/{event.id}", headers=_auth("bob-token"))
    assert missing.status_code == 404

    rejoined = client.post(
        "/api/v1/guest-events/join",
        json={"event_id": event.id},
        headers=_auth("bob-token"),
    )
    assert rejoined.status_code == 201
    assert rejoined.json()["guest_event"]["id"] != body["guest_event"]["id"]


def test_join_without_login_provisions_guest(client, people, make_event):
    event = make_event(people["alice"])

    response = client.post(
        "/api/v1/guest-events/join",
        json={"event_id": event.id, "email": "walkin@x.com", "name": "Walk In"},
    )
    assert response.status_code == 201
    assert response.json()["guest_event"]["user"]["name"] == "Walk In"

    missing_user = client.post("/api/v1/guest-events/join", json={"event_id": event.id})
    assert missing_user.status_code == 400


def test_private_event_join_requires_invite(client, session, people, make_event):
    alice, bob = people["alice"], people["bob"]
    event = make_event(alice, visibility="PRIVATE")

    denied = client.post(
        "/api/v1/guest-events/join",
        json={"short_code": event.short_code},
        headers=_auth("bob-token"),
    )
    assert denied.status_code == 403
    assert denied.json() == {"error": "Forbidden", "detail": "Event is private"}

    invited = client.post(
        f"/api/v1/events/{event.id}/invites",
        json={"user_id": bob.id},
        headers=_auth("alice-token"),
    )
    assert invited.status_code == 201
    assert invited.json()["guest_event"]["status"] == "INVITED"

    repeat = client.post(
        f"/api/v1/events/{event.id}/invites",
        json={"user_id": bob.id},
        headers=_auth("alice-token"),
    )
    assert repeat.status_code == 200
    assert repeat.json()["created"] is False

    not_owner = client.post(
        f"/api/v1/events/{event.id}/invites",
        json={"email": "eve@x.com"},
        headers=_auth("bob-token"),
    )
    assert not_owner.status_code == 403

    accepted = client.patch(
        f"/api/v1/guest-events/{bob.id}/{event.id}",
        json={"status": "JOINED"},
        headers=_auth("bob-token"),
    )
    assert accepted.status_code == 200
    assert accepted.json()["guest_event"]["status"] == "JOINED"
    assert accepted.json()["guest_event"]["joined_at"] is not None


def test_guest_status_updates_need_guest_or_owner(client, session, people, make_event):
    alice, bob, carol = people["alice"], people["bob"], people["carol"]
    event = make_event(alice)
    join_event(session, JoinRequest(event_id=event.id, user_id=bob.id))
    session.commit()
    url = f"/api/v1/guest-events/{bob.id}/{event.id}"

    assert client.patch(url, json={"status": "CHECKED_IN"}).status_code == 401
    assert (
        client.patch(
            url, json={"status": "CHECKED_IN"}, headers=_auth("carol-token")
        ).status_code
        == 403
    )
    bad = client.patch(url, json={"status": "MAYBE"}, headers=_auth("alice-token"))
    assert bad.status_code == 400

    checked = client.patch(url, json={"status": "checked_in"}, headers=_auth("alice-token"))
    assert checked.status_code == 200
    first_stamp = checked.json()["guest_event"]["checked_in_at"]
    assert first_stamp is not None

    repeat = client.patch(url, json={"status": "CHECKED_IN"}, headers=_auth("bob-token"))
    assert repeat.json()["guest_event"]["checked_in_at"] == first_stamp

    missing = client.patch(
        f"/api/v1/guest-events/{carol.id}/{event.id}",
        json={"status": "JOINED"},
        headers=_auth("carol-token"),
    )
    assert missing.status_code == 404


def test_owner_mutations_and_realtime_messages(client, people, make_event):
    event = make_event(people["alice"], name="Launch")
    received: list[dict] = []
    notify.hub.subscribe(event.id, received.append)
    try:
        not_owner = client.patch(
            f"/api/v1/events/{event.id}",
            json={"name": "Hijacked"},
            headers=_auth("bob-token"),
        )
        assert not_owner.status_code == 403
        anonymous = client.patch(f"/api/v1/events/{event.id}", json={"name": "Nope"})
        assert anonymous.status_code == 401

        updated = client.patch(
            f"/api/v1/events/{event.id}",
            json={"name": "Launch v2", "visibility": "unlisted"},
            headers=_auth("alice-token"),
        )
        assert updated.status_code == 200
        assert updated.json()["event"]["name"] == "Launch v2"
        assert updated.json()["event"]["visibility"] == "UNLISTED"

        bad_range = client.patch(
            f"/api/v1/events/{event.id}",
            json={"end_date": _iso(utcnow() - timedelta(days=30))},
            headers=_auth("alice-token"),
        )
        assert bad_range.status_code == 400

        item = client.post(
            f"/api/v1/events/{event.id}/schedule",
            json={"title": "Keynote", "start_time": "10:00 AM", "end_time": "11:00 AM"},
            headers=_auth("alice-token"),
        )
        assert item.status_code == 201
        assert item.json()["schedule_item"]["order_index"] == 0

        note = client.post(
            f"/api/v1/events/{event.id}/announcements",
            json={"title": "Doors", "message": "Doors open at 9"},
            headers=_auth("alice-token"),
        )
        assert note.status_code == 201
    finally:
        notify.hub.unsubscribe(event.id, received.append)

    assert [message["type"] for message in received] == [
        "event_updated",
        "schedule_updated",
        "announcement",
    ]
    assert all(message["event_id"] == event.id for message in received)

    detail = client.get(f"/api/v1/events/{event.id}", headers=_auth("bob-token")).json()
    assert [entry["title"] for entry in detail["event"]["announcements"]] == ["Doors"]
    assert [entry["title"] for entry in detail["event"]["schedule_items"]] == ["Keynote"]


def test_delete_event_soft_deletes(client, people, make_event):
    event = make_event(people["alice"])
    url = f"/api/v1/events/{event.id}"

    assert client.delete(url, headers=_auth("bob-token")).status_code == 403
    assert client.delete(url, headers=_auth("alice-token")).status_code == 204
    assert client.get(url).status_code == 404
    assert client.get(f"/api/v1/events/code/{event.short_code}").status_code == 404
    assert client.delete(url, headers=_auth("alice-token")).status_code == 404


def test_guest_list_follows_read_access(client, session, people, make_event):
    alice, bob = people["alice"], people["bob"]
    event = make_event(alice, visibility="PRIVATE")
    invite_guest(session, event, user_id=bob.id)
    session.commit()
    url = f"/api/v1/events/{event.id}/guests"

    owner = client.get(url, headers=_auth("alice-token"))
    assert owner.status_code == 200
    assert [guest["user"]["email"] for guest in owner.json()["guests"]] == ["bob@x.com"]
    assert client.get(url, headers=_auth("bob-token")).status_code == 200
    assert client.get(url, headers=_auth("carol-token")).status_code == 403
    assert client.get(url).status_code == 401


def test_calendar_lists_owned_and_joined_events(client, session, people, make_event):
    alice, bob = people["alice"], people["bob"]
    start = utcnow().replace(microsecond=0) + timedelta(days=2)
    owned = make_event(bob, name="Bob's Party", start_date=start)
    joined = make_event(alice, name="Alice's Party", start_date=start + timedelta(days=1))
    make_event(alice, name="Not Mine", start_date=start)
    make_event(alice, name="Far Away", start_date=start + timedelta(days=90))
    join_event(session, JoinRequest(event_id=joined.id, user_id=bob.id))
    session.commit()

    calendar = client.get("/api/v1/calendar", headers=_auth("bob-token")).json()
    assert [event["id"] for event in calendar["events"]] == [owned.id, joined.id]
    assert calendar["events"][0]["is_owner"] is True
    assert calendar["events"][1]["membership"]["status"] == "JOINED"

    assert client.get("/api/v1/calendar").status_code == 401
    bad = client.get("/api/v1/calendar?start=yesterday", headers=_auth("bob-token"))
    assert bad.status_code == 400


def test_my_events_lists_admin_events_with_counts(client, session, people, make_event):
    alice, bob = people["alice"], people["bob"]
    event = make_event(alice, visibility="UNLISTED")
    join_event(session, JoinRequest(event_id=event.id, user_id=bob.id))
    session.commit()

    mine = client.get("/api/v1/events/mine", headers=_auth("alice-token")).json()
    assert [(row["id"], row["guest_count"]) for row in mine["events"]] == [(event.id, 1)]
    assert client.get("/api/v1/events/mine").status_code == 401


def test_devices_receive_push_logs(client, session, people, make_event):
    event = make_event(people["alice"])
    device = client.post(
        "/api/v1/devices",
        json={"token": "bob-phone-token", "device_type": "ios"},
        headers=_auth("bob-token"),
    )
    assert device.status_code == 201
    assert device.json()["device"]["device_type"] == "IOS"
    bad = client.post(
        "/api/v1/devices",
        json={"token": "x", "device_type": "pager"},
        headers=_auth("bob-token"),
    )
    assert bad.status_code == 400

    client.post(
        "/api/v1/guest-events/join",
        json={"event_id": event.id},
        headers=_auth("bob-token"),
    )
    response = client.post(
        f"/api/v1/events/{event.id}/announcements",
        json={"title": "Rain plan", "message": "Moving indoors"},
        headers=_auth("alice-token"),
    )
    assert response.status_code == 201

    logs = session.scalars(
        select(NotificationLog).where(NotificationLog.event_id == event.id)
    ).all()
    assert [(log.token, log.success, log.title) for log in logs] == [
        ("bob-phone-token", True, "Rain plan")
    ]
    session.commit()


def test_missing_guest_rows_are_not_created_by_failed_requests(
    client, session, people, make_event
):
    event = make_event(people["alice"], visibility="PRIVATE")
    client.post(
        "/api/v1/guest-events/join",
        json={"event_id": event.id, "email": "late@x.com"},
    )
    rows = session.scalars(select(GuestEvent)).all()
    assert rows == []
    session.commit()
