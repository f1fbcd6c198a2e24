from datetime import timedelta

import pytest

from shelf_service.app import create_app

from conftest import T0

KEY = {"X-API-Key": "test-key"}


@pytest.fixture
def client(library, test_config):
    app = create_app(test_config, engine=library.engine)
    app.testing = True
    return app.test_client()


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ok"


def test_sensor_and_maintenance_routes_need_the_service_key(client, library):
    resp = client.post(f"/api/shelves/{library.shelf1.id}/readings", json={"mass": 0})
    assert resp.status_code == 401
    resp = client.post("/api/books", json={"title": "X", "mass": 100},
                       headers={"X-API-Key": "wrong"})
    assert resp.status_code == 401


def test_catalog_maintenance(client, library):
    resp = client.post("/api/shelves", json={"shelf_number": 3, "capacity": 8000}, headers=KEY)
    assert resp.status_code == 200
    shelf_id = resp.get_json()["id"]

    resp = client.post(
        "/api/books",
        json={"title": "Refactoring", "author": "Martin Fowler", "mass": 650, "shelf_id": shelf_id},
        headers=KEY,
    )
    assert resp.status_code == 201
    book = resp.get_json()
    assert book["status"] == "available"

    state = client.get(f"/api/books/{book['id']}").get_json()
    assert state["shelf_id"] == shelf_id
    assert state["derived_status"] == "available"

    resp = client.post("/api/users", json={"id": "carol", "name": "Carol"}, headers=KEY)
    assert resp.get_json() == {"id": "carol", "role": "reader"}


def test_reservation_pickup_and_inbox_over_http(client, library, clock):
    resp = client.post(
        "/api/reservations",
        json={"book_id": library.book.id, "holder_id": "alice", "ttl_seconds": 300},
    )
    assert resp.status_code == 201
    lease = resp.get_json()
    assert lease["status"] == "active"
    assert lease["deadline"] == (T0 + timedelta(minutes=5)).isoformat()

    clock.advance(minutes=1)
    resp = client.post(
        f"/api/shelves/{library.shelf1.id}/readings", json={"mass": 0}, headers=KEY
    )
    assert resp.status_code == 200
    result = resp.get_json()
    assert result["outcome"] == "issued"
    assert result["lease_id"] == lease["lease_id"]
    assert result["anomaly_detected"] is False

    inbox = client.get("/api/users/alice/notifications?limit=1").get_json()
    assert [n["type"] for n in inbox["items"]] == ["book_issued"]
    assert inbox["items"][0]["metadata"]["holder_id"] == "alice"
    assert inbox["next_cursor"] == inbox["items"][0]["id"]

    older = client.get(
        f"/api/users/alice/notifications?cursor={inbox['next_cursor']}"
    ).get_json()
    assert [n["type"] for n in older["items"]] == ["reservation_created"]

    assert client.get("/api/users/alice/notifications/unread-count").get_json() == {"unread": 2}
    note_id = inbox["items"][0]["id"]
    resp = client.post(f"/api/notifications/{note_id}/read", json={"user_id": "bob"})
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "not_owner"
    resp = client.post(f"/api/notifications/{note_id}/read", json={"user_id": "alice"})
    assert resp.get_json()["is_read"] is True
    assert client.post("/api/users/alice/notifications/read-all").get_json() == {"updated": 1}


def test_conflict_carries_identifiers(client, library):
    body = {"book_id": library.book.id, "holder_id": "alice"}
    first = client.post("/api/reservations", json=body).get_json()
    resp = client.post("/api/reservations", json={**body, "holder_id": "bob"})

    assert resp.status_code == 409
    err = resp.get_json()
    assert err["error"] == "already_reserved"
    assert err["book_id"] == library.book.id
    assert err["lease_id"] == first["lease_id"]


def test_cancel_over_http(client, library):
    lease = client.post(
        "/api/reservations", json={"book_id": library.book.id, "holder_id": "alice"}
    ).get_json()

    resp = client.post(f"/api/reservations/{lease['lease_id']}/cancel", json={"actor_id": "bob"})
    assert resp.status_code == 403
    resp = client.post(f"/api/reservations/{lease['lease_id']}/cancel", json={"actor_id": "alice"})
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "cancelled"
    resp = client.post("/api/reservations/4040/cancel", json={"actor_id": "alice"})
    assert resp.status_code == 404


def test_validation_errors(client, library):
    resp = client.post("/api/reservations", json={"book_id": library.book.id})
    assert resp.status_code == 400
    resp = client.post(
        f"/api/shelves/{library.shelf1.id}/readings", json={"mass": -3}, headers=KEY
    )
    assert resp.status_code == 400
    assert resp.get_json()["shelf_id"] == library.shelf1.id
    resp = client.post(
        f"/api/shelves/{library.shelf1.id}/readings",
        json={"mass": 0, "observed_at": "yesterday"},
        headers=KEY,
    )
    assert resp.status_code == 400


def test_unlock_and_sweep_over_http(client, library, clock):
    resp = client.post(
        "/api/unlock-events",
        json={
            "user_id": "alice",
            "shelf_id": library.shelf1.id,
            "book_id": library.book.id,
            "action": "pickup",
            "valid_until": (T0 + timedelta(minutes=2)).isoformat() + "Z",
        },
        headers=KEY,
    )
    assert resp.status_code == 201
    lease = resp.get_json()["lease"]
    assert lease["deadline"] == (T0 + timedelta(minutes=2)).isoformat()

    clock.advance(minutes=3)
    resp = client.post("/api/sweep", headers=KEY)
    assert resp.get_json() == {"expired": [lease["lease_id"]]}


def test_alerts_listing_and_resolution(client, library, clock):
    clock.advance(seconds=5)
    client.post(f"/api/shelves/{library.shelf2.id}/readings", json={"mass": 120}, headers=KEY)

    (alert,) = client.get("/api/alerts?unresolved=true").get_json()
    assert alert["alert_type"] == "unknown_object"
    assert alert["shelf_number"] == 2

    resp = client.post(
        f"/api/alerts/{alert['alert_id']}/resolve", json={"actor_id": "alice"}, headers=KEY
    )
    assert resp.status_code == 403
    resp = client.post(
        f"/api/alerts/{alert['alert_id']}/resolve", json={"actor_id": "lena"}, headers=KEY
    )
    assert resp.get_json()["resolved_by"] == "lena"
    assert client.get("/api/alerts?unresolved=true").get_json() == []
    assert len(client.get(f"/api/alerts?shelf_id={library.shelf2.id}").get_json()) == 1


@pytest.mark.parametrize(
    "path, body",
    [
        ("/api/reservations", {"book_id": "abc", "holder_id": "alice"}),
        ("/api/reservations", {"book_id": 1, "holder_id": "alice", "ttl_seconds": "soon"}),
        ("/api/shelves", {"shelf_number": "top"}),
        ("/api/shelves", {"shelf_number": 4, "current_mass": "heavy"}),
        ("/api/books", {"title": "X", "mass": "a lot"}),
        ("/api/books", {"title": "X", "mass": 100, "shelf_id": [1]}),
        (
            "/api/unlock-events",
            {"user_id": "alice", "shelf_id": "one", "action": "pickup",
             "valid_until": "2025-11-18T11:00:00"},
        ),
        (
            "/api/unlock-events",
            {"user_id": "alice", "shelf_id": 1, "book_id": "b-1", "action": "pickup",
             "valid_until": "2025-11-18T11:00:00"},
        ),
    ],
)
def test_non_numeric_ids_and_masses_are_rejected_as_json(client, library, path, body):
    resp = client.post(path, json=body, headers=KEY)

    assert resp.status_code == 400
    err = resp.get_json()
    assert err["error"] == "invalid"
    assert "must be a number" in err["message"]
    assert client.get(f"/api/books/{library.book.id}").get_json()["status"] == "available"


def test_bad_ttl_error_names_the_book(client, library):
    resp = client.post(
        "/api/reservations",
        json={"book_id": library.book.id, "holder_id": "alice", "ttl_seconds": "soon"},
    )
    assert resp.status_code == 400
    assert resp.get_json()["book_id"] == library.book.id
