# pandal_store.py
# Redis-backed pandal collection:
# - one JSON document per record plus an insertion-ordered id list
# - 2dsphere indexes as GEO sorted sets, registered by name; points beyond
#   the GEO latitude limit live in a per-index polar hash
# - every call runs under a caller-supplied Deadline

import asyncio
import json
import logging
import math
import time
from collections import deque
from typing import Any, Awaitable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from config import PANDAL_COLLECTION, PANDAL_DB, REDIS_POOL_MAX, REDIS_URL, STORE_TIMEOUT_S
from models import GeoNear, InsertAck

logger = logging.getLogger("pandal.store")

BATCH_SIZE = 100
GEO_LAT_LIMIT = 85.05112878  # GEO encoding cannot hold the poles
EARTH_RADIUS_M = 6372797.560856  # same sphere as Redis GEO

DOC_KEY     = "{ns}:doc:{id}"
IDS_KEY     = "{ns}:ids"
INDEXES     = "{ns}:indexes"
GEO_INDEX   = "{ns}:idx:{name}"
POLAR_INDEX = "{ns}:idx:{name}:polar"


class StoreError(Exception):
    pass

class DeadlineExceeded(StoreError):
    pass

class GeoIndexError(StoreError):
    """A document's indexed field is not a usable point."""

class IndexConflict(StoreError):
    pass

class NoGeoIndex(StoreError):
    pass


def _dump(x): return json.dumps(x, separators=(",", ":"), ensure_ascii=False)


def haversine_m(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    lng1, lat1, lng2, lat2 = map(math.radians, (a[0], a[1], b[0], b[1]))
    h = (math.sin((lat2 - lat1) / 2) ** 2
         + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2)
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


class Deadline:
    """Time budget shared by every store call made on behalf of one request."""

    def __init__(self, seconds: float = STORE_TIMEOUT_S):
        self.expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    async def run(self, aw: Awaitable):
        remaining = self.remaining()
        if remaining <= 0:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise DeadlineExceeded("context deadline exceeded")
        try:
            return await asyncio.wait_for(aw, remaining)
        except asyncio.TimeoutError as e:
            raise DeadlineExceeded("context deadline exceeded") from e


def extract_point(doc: Dict[str, Any], field: str) -> Optional[Tuple[float, float]]:
    """(lng, lat) of doc[field], or None when the field is absent.

    Raises GeoIndexError when the field is present but not a GeoJSON Point
    with lng in [-180, 180] and lat in [-90, 90].
    """
    if doc.get(field) is None:
        return None
    geo = doc[field]
    if not isinstance(geo, dict) or geo.get("type") != "Point":
        raise GeoIndexError(f"Can't extract geo keys: '{field}' is not a GeoJSON Point")
    coords = geo.get("coordinates")
    if (not isinstance(coords, (list, tuple)) or len(coords) != 2
            or not all(isinstance(c, (int, float)) and not isinstance(c, bool) for c in coords)):
        raise GeoIndexError("Can't extract geo keys: Point must have exactly two numeric coordinates")
    lng, lat = float(coords[0]), float(coords[1])
    if not (math.isfinite(lng) and math.isfinite(lat)
            and -180.0 <= lng <= 180.0 and -90.0 <= lat <= 90.0):
        raise GeoIndexError(f"Can't extract geo keys: longitude/latitude is out of bounds, lng: {lng} lat: {lat}")
    return lng, lat


def is_polar(lat: float) -> bool:
    return abs(lat) > GEO_LAT_LIMIT


class PandalStore:
    def __init__(self, client: redis.Redis, db: str = PANDAL_DB, collection: str = PANDAL_COLLECTION):
        self.r = client
        self.ns = f"{db}:{collection}"

    def key(self, template: str, **kw) -> str:
        return template.format(ns=self.ns, **kw)

    async def _geo_indexes(self) -> Dict[str, str]:
        """index name -> indexed field, for every registered 2dsphere index."""
        raw = await self.r.hgetall(self.key(INDEXES))
        out = {}
        for name, keys in raw.items():
            for field, kind in json.loads(keys).items():
                if kind == "2dsphere":
                    out[name] = field
        return out

    def _index_points(self, pipe, name: str, points: List[Tuple[str, float, float]]) -> None:
        """Queue GEOADD (or polar HSET) for (id, lng, lat) triples. Re-adding is a no-op."""
        geo_values: List[Any] = []
        polar: Dict[str, str] = {}
        for pid, lng, lat in points:
            if is_polar(lat):
                polar[pid] = _dump([lng, lat])
            else:
                geo_values.extend((lng, lat, pid))
        if geo_values:
            pipe.geoadd(self.key(GEO_INDEX, name=name), geo_values)
        if polar:
            pipe.hset(self.key(POLAR_INDEX, name=name), mapping=polar)

    # ----------------- Writes -----------------

    async def insert(self, doc: Dict[str, Any], deadline: Deadline) -> InsertAck:
        return await deadline.run(self._insert(doc))

    async def _insert(self, doc: Dict[str, Any]) -> InsertAck:
        pid = doc["id"]
        points = {}
        for name, field in (await self._geo_indexes()).items():
            point = extract_point(doc, field)
            if point is not None:
                points[name] = point

        pipe = self.r.pipeline(transaction=True)
        pipe.set(self.key(DOC_KEY, id=pid), _dump(doc))
        pipe.rpush(self.key(IDS_KEY), pid)
        for name, (lng, lat) in points.items():
            self._index_points(pipe, name, [(pid, lng, lat)])
        await pipe.execute()
        return InsertAck(inserted_id=pid)

    async def create_geo_index(self, field: str, name: str, deadline: Deadline) -> str:
        """Create (or confirm) a 2dsphere index on field. Idempotent for the same name and key."""
        registry = self.key(INDEXES)
        wanted = {field: "2dsphere"}
        existing = await deadline.run(self.r.hget(registry, name))
        if existing is not None:
            if json.loads(existing) != wanted:
                raise IndexConflict(
                    f"An existing index has the same name as the requested index but different keys: {name}"
                )
            return name

        # backfill only adds; entries written meanwhile by another worker stay
        points: List[Tuple[str, float, float]] = []
        cursor = PandalCursor(self, deadline)
        try:
            async for doc in cursor:
                point = extract_point(doc, field)
                if point is not None:
                    points.append((doc["id"], point[0], point[1]))
        finally:
            await cursor.close()

        pipe = self.r.pipeline(transaction=True)
        self._index_points(pipe, name, points)
        pipe.hset(registry, name, _dump(wanted))
        await deadline.run(pipe.execute())
        logger.info("indexed %d existing records into %s", len(points), name)
        return name

    # ----------------- Reads -----------------

    async def find(self, filter: Dict[str, Any], deadline: Deadline) -> "PandalCursor":
        """Cursor over raw documents. filter is {} or {field: GeoNear}."""
        if not filter:
            return PandalCursor(self, deadline)
        if len(filter) != 1:
            raise StoreError(f"unsupported filter with {len(filter)} fields")
        (field, near), = filter.items()
        if not isinstance(near, GeoNear):
            raise StoreError(f"unsupported filter on '{field}'")
        ids = await deadline.run(self._near_ids(field, near))
        return PandalCursor(self, deadline, ids=ids)

    async def _near_ids(self, field: str, near: GeoNear) -> List[str]:
        """Ids within near.max_distance meters, sorted ASC by distance."""
        index = next((n for n, f in (await self._geo_indexes()).items() if f == field), None)
        if index is None:
            raise NoGeoIndex(f"unable to find index for $geoNear query on '{field}'")
        lng, lat = near.geometry.coordinates
        radius = near.max_distance

        hits = await self._geo_hits(self.key(GEO_INDEX, name=index), lng, lat, radius)
        for pid, raw in (await self.r.hgetall(self.key(POLAR_INDEX, name=index))).items():
            d = haversine_m((lng, lat), json.loads(raw))
            if d <= radius:
                hits.append((pid, d))
        hits.sort(key=lambda h: h[1])
        return [pid for pid, _ in hits]

    async def _geo_hits(self, geo_key: str, lng: float, lat: float, radius: float) -> List[Tuple[str, float]]:
        """(id, meters) for GEO members within radius of (lng, lat)."""
        if not is_polar(lat):
            rows = await self._geosearch(geo_key, lng, lat, radius, withdist=True)
            return [(m, float(d)) for m, d in rows]
        # centre beyond the GEO range: search a superset around the nearest
        # encodable point, then measure from the real centre
        edge = math.copysign(GEO_LAT_LIMIT, lat)
        slack = haversine_m((lng, lat), (lng, edge))
        rows = await self._geosearch(geo_key, lng, edge, radius + slack, withcoord=True)
        hits = []
        for m, coord in rows:
            d = haversine_m((lng, lat), (float(coord[0]), float(coord[1])))
            if d <= radius:
                hits.append((m, d))
        return hits

    async def _geosearch(self, geo_key: str, lng: float, lat: float, radius: float, **opts):
        try:
            return await self.r.geosearch(
                geo_key,
                longitude=lng,
                latitude=lat,
                radius=radius,
                unit="m",
                sort="ASC",
                **opts,
            )
        except ResponseError as e:
            # GEOSEARCH arrived in Redis 6.2
            if "unknown command" not in str(e).lower():
                raise
            return await self.r.georadius(geo_key, lng, lat, radius, unit="m", sort="ASC", **opts)

    # ----------------- Health -----------------

    async def ping(self) -> bool:
        try:
            await self.r.ping()
            return True
        except RedisError:
            return False

    async def close(self) -> None:
        await self.r.aclose(close_connection_pool=True)


class PandalCursor:
    """Forward-only cursor over raw documents.

    With ids=None it walks the collection in insertion order; otherwise it
    walks the given ids in order. Documents are fetched BATCH_SIZE at a time,
    each fetch under the deadline.
    """

    def __init__(self, store: PandalStore, deadline: Deadline, ids: Optional[List[str]] = None):
        self._store = store
        self._deadline = deadline
        self._ids = ids
        self._offset = 0
        self._buffer: deque = deque()
        self._exhausted = False
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        while not self._buffer:
            if self.closed or self._exhausted:
                raise StopAsyncIteration
            self._buffer.extend(await self._deadline.run(self._next_batch()))
        return self._buffer.popleft()

    async def _next_batch(self) -> List[Dict[str, Any]]:
        start, stop = self._offset, self._offset + BATCH_SIZE
        if self._ids is None:
            ids = await self._store.r.lrange(self._store.key(IDS_KEY), start, stop - 1)
        else:
            ids = self._ids[start:stop]
        self._offset = stop
        if len(ids) < BATCH_SIZE:
            self._exhausted = True
        if not ids:
            return []

        raws = await self._store.r.mget([self._store.key(DOC_KEY, id=pid) for pid in ids])
        docs = []
        for pid, raw in zip(ids, raws):
            if raw is None:
                logger.debug("skipping %s: listed but document missing", pid)
                continue
            docs.append(json.loads(raw))
        return docs

    async def close(self) -> None:
        self.closed = True
        self._buffer.clear()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()


def make_store(url: str = REDIS_URL, db: str = PANDAL_DB, collection: str = PANDAL_COLLECTION) -> PandalStore:
    pool = redis.ConnectionPool.from_url(
        url,
        max_connections=REDIS_POOL_MAX,
        socket_connect_timeout=1.0,
        socket_timeout=1.5,
        health_check_interval=30,
        decode_responses=True,
    )
    return PandalStore(redis.Redis(connection_pool=pool), db, collection)
