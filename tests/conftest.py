import math

import fakeredis
import fakeredis.aioredis
import pytest
from fastapi.testclient import TestClient

from app import app
from config import LOCATION_INDEX
from pandal_store import Deadline, PandalStore

KOLKATA = [88.36, 22.57]
DELHI = [77.20, 28.61]


def haversine_m(a, b):
    """Great-circle distance in meters between two [lng, lat] points."""
    lng1, lat1, lng2, lat2 = map(math.radians, (a[0], a[1], b[0], b[1]))
    h = (math.sin((lat2 - lat1) / 2) ** 2
         + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2)
    return 2 * 6372797.560856 * math.asin(math.sqrt(h))


def point(lng, lat):
    return {"type": "Point", "coordinates": [lng, lat]}


def fake_store() -> PandalStore:
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return PandalStore(client, "test_db", "pandals")


@pytest.fixture
def store():
    return fake_store()


@pytest.fixture
async def indexed_store(store):
    await store.create_geo_index("location", LOCATION_INDEX, Deadline())
    return store


@pytest.fixture
def client():
    # the store connects lazily, on the TestClient's own loop
    app.state.store = fake_store()
    with TestClient(app) as c:
        yield c
    app.state.store = None
    app.dependency_overrides.clear()
