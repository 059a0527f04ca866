import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException, Request

from app import app, cancel_on_disconnect, get_store, list_pandals
from conftest import DELHI, KOLKATA, haversine_m, point
from pandal_store import DeadlineExceeded


def create(client, name, coords, **extra):
    body = {"name": name, "location": point(*coords)}
    body.update(extra)
    return client.post("/pandals", json=body)


def test_create_and_list(client):
    r = create(client, "A", KOLKATA)
    assert r.status_code == 201
    body = r.json()
    assert body["message"] == "Pandal inserted"
    assert body["data"]["inserted_id"]

    r = client.get("/pandals")
    assert r.status_code == 200
    data = r.json()["data"]
    assert len(data) == 1
    assert data[0]["name"] == "A"
    assert data[0]["location"]["coordinates"] == KOLKATA
    assert data[0]["id"] == body["data"]["inserted_id"]


def test_empty_catalog_is_an_empty_array(client):
    r = client.get("/pandals")
    assert r.status_code == 200
    assert r.json() == {"data": []}


def test_created_record_defaults(client):
    before = datetime.now(timezone.utc)
    create(client, "A", KOLKATA)
    create(client, "B", KOLKATA, createdAt="0001-01-01T00:00:00Z")

    for rec in client.get("/pandals").json()["data"]:
        assert rec["images"] == []
        created = datetime.fromisoformat(rec["createdAt"].replace("Z", "+00:00"))
        assert abs(created - before) < timedelta(seconds=5)


def test_record_shape(client):
    create(client, "Santosh Mitra Square", KOLKATA, description="Lebutala Park", area="central",
           theme="palace", images=["https://img.example/a.jpg"], ratingAvg=4.2, ratingCount=7,
           createdAt="2025-09-28T10:00:00Z")
    rec = client.get("/pandals").json()["data"][0]
    assert set(rec) == {"id", "name", "description", "area", "theme", "location", "images",
                        "ratingAvg", "ratingCount", "createdAt"}
    assert rec["ratingAvg"] == 4.2
    assert rec["ratingCount"] == 7
    assert rec["createdAt"].startswith("2025-09-28T10:00:00")


def test_proximity_hit(client):
    create(client, "Kolkata", KOLKATA)
    create(client, "Delhi", DELHI)
    r = client.get("/pandals", params={"lng": 88.36, "lat": 22.57, "radius": 5000})
    assert r.status_code == 200
    data = r.json()["data"]
    assert [d["name"] for d in data] == ["Kolkata"]


def test_proximity_miss(client):
    create(client, "Kolkata", KOLKATA)
    create(client, "Delhi", DELHI)
    r = client.get("/pandals", params={"lng": 0, "lat": 0, "radius": 1000})
    assert r.status_code == 200
    assert r.json() == {"data": []}


def test_default_radius(client):
    create(client, "A", [88.360, 22.570])
    r = client.get("/pandals", params={"lng": 88.361, "lat": 22.571})
    assert r.status_code == 200
    assert [d["name"] for d in r.json()["data"]] == ["A"]


def test_unparsable_radius_uses_default(client):
    create(client, "near", [88.3, 22.5])
    create(client, "far", [88.3, 22.6])  # ~11 km away
    r = client.get("/pandals", params={"lng": 88.3, "lat": 22.5, "radius": "xyz"})
    assert r.status_code == 200
    assert [d["name"] for d in r.json()["data"]] == ["near"]


def test_proximity_is_sorted_and_bounded(client):
    origin = [88.3639, 22.5726]
    for i, d in enumerate([0.04, 0.0, 0.015, 0.003, 0.2]):
        create(client, f"p{i}", [origin[0], origin[1] + d])

    radius = 3000
    r = client.get("/pandals", params={"lng": origin[0], "lat": origin[1], "radius": radius})
    dists = [haversine_m(origin, d["location"]["coordinates"]) for d in r.json()["data"]]
    assert dists == sorted(dists)
    assert dists[0] == 0
    assert all(x <= radius + 1 for x in dists)
    assert len(dists) == 3


def test_mismatched_coordinates(client):
    assert client.get("/pandals", params={"lng": 88.36}).status_code == 400
    r = client.get("/pandals", params={"lat": 22.57})
    assert r.status_code == 400
    assert "Both lng and lat" in r.json()["detail"]


def test_invalid_coordinates(client):
    r = client.get("/pandals", params={"lng": "abc", "lat": 22.5})
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid lng or lat coordinates"


def test_bad_bodies_are_400(client):
    assert client.post("/pandals", content=b"{not json", headers={"content-type": "application/json"}).status_code == 400
    r = client.post("/pandals", json={"name": "no location"})
    assert r.status_code == 400
    assert "location" in r.json()["detail"]
    assert create(client, "A", KOLKATA, ratingCount=-1).status_code == 400
    assert create(client, "A", KOLKATA, images="not-a-list").status_code == 400


def test_unindexable_location_is_a_store_error(client):
    r = client.post("/pandals", json={"name": "X", "location": point(500, 10)})
    assert r.status_code == 500
    assert r.json()["detail"].startswith("Error while inserting data: ")

    r = client.post("/pandals", json={"name": "X", "location": {"type": "Polygon", "coordinates": [1, 2]}})
    assert r.status_code == 500
    assert client.get("/pandals").json() == {"data": []}


def test_store_failures_are_500(client):
    class TimedOutStore:
        async def find(self, filter, deadline):
            raise DeadlineExceeded("context deadline exceeded")

        async def insert(self, doc, deadline):
            raise DeadlineExceeded("context deadline exceeded")

    app.dependency_overrides[get_store] = lambda: TimedOutStore()
    r = client.get("/pandals")
    assert r.status_code == 500
    assert r.json()["detail"] == "context deadline exceeded"
    assert create(client, "A", KOLKATA).status_code == 500


def test_undecodable_record_is_500(client):
    create(client, "A", KOLKATA)
    store = app.state.store
    ns = store.ns

    # corrupt the stored document behind the API's back
    client.portal.call(_corrupt, store, ns)
    r = client.get("/pandals")
    assert r.status_code == 500


async def _corrupt(store, ns):
    pid = (await store.r.lrange(f"{ns}:ids", 0, -1))[0]
    await store.r.set(f"{ns}:doc:{pid}", '{"id": "%s"}' % pid)


def test_healthz(client):
    assert client.get("/healthz").json() == {"redis_ok": True}


def test_polar_pandals(client):
    assert create(client, "Arctic", [10, 88]).status_code == 201
    assert create(client, "Antarctic", [0, -88]).status_code == 201

    r = client.get("/pandals", params={"lng": 10, "lat": 88, "radius": 1000})
    assert [d["name"] for d in r.json()["data"]] == ["Arctic"]
    r = client.get("/pandals", params={"lng": 0, "lat": -88, "radius": 1000})
    assert [d["name"] for d in r.json()["data"]] == ["Antarctic"]

    assert create(client, "Beyond", [0, 91]).status_code == 500


# ----------------- client disconnect -----------------

def get_request(messages):
    it = iter(messages)

    async def receive():
        try:
            return next(it)
        except StopIteration:
            await asyncio.Event().wait()  # connection stays open

    scope = {"type": "http", "method": "GET", "path": "/pandals", "headers": [], "query_string": b""}
    return Request(scope, receive)


async def test_disconnect_cancels_store_work():
    class HangingStore:
        cancelled = False

        async def find(self, filter, deadline):
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                self.cancelled = True
                raise

    store = HangingStore()
    request = get_request([
        {"type": "http.request", "body": b"", "more_body": False},
        {"type": "http.disconnect"},
    ])
    with pytest.raises(HTTPException) as exc:
        await asyncio.wait_for(list_pandals(request, store=store), 5)
    assert exc.value.status_code == 500
    assert exc.value.detail == "context canceled"
    assert store.cancelled


async def test_connected_client_gets_the_result():
    async def answer():
        await asyncio.sleep(0)
        return 42

    request = get_request([{"type": "http.request", "body": b"", "more_body": False}])
    assert await cancel_on_disconnect(request, answer()) == 42
