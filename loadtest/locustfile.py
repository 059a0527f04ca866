# locustfile.py
import os, random, uuid
from locust import HttpUser, task, between

# ------------------- Config -------------------
BASE_LAT = float(os.getenv("BASE_LAT", 22.5726))        # Kolkata
BASE_LNG = float(os.getenv("BASE_LNG", 88.3639))
PANDALS_PER_USER = int(os.getenv("PANDALS_PER_USER", 20))
CREATE_EVERY = (float(os.getenv("CREATE_MIN_WAIT", 0.5)),
                float(os.getenv("CREATE_MAX_WAIT", 1.5)))
SEARCH_EVERY = (float(os.getenv("SEARCH_MIN_WAIT", 0.1)),
                float(os.getenv("SEARCH_MAX_WAIT", 0.3)))
RADIUS_M = float(os.getenv("SEARCH_RADIUS_M", 3000))
BOUND_BOX_KM = float(os.getenv("BOUND_BOX_KM", 8))       # keep pandals around base
API_PREFIX = os.getenv("API_PREFIX", "").rstrip("/")

THEMES = ["heritage", "eco-friendly", "folk art", "bamboo", "terracotta", "lights"]
AREAS = ["north", "south", "central", "salt lake", "howrah"]

# ------------------- Helpers -------------------
def km_to_deg_lat(km: float) -> float:
    return km / 110.574

def km_to_deg_lng(km: float, lat: float) -> float:
    import math
    return km / (111.320 * max(0.01, abs(math.cos(math.radians(lat)))))

LAT_SPAN = km_to_deg_lat(BOUND_BOX_KM)
LNG_SPAN = km_to_deg_lng(BOUND_BOX_KM, BASE_LAT)

def random_point():
    lat = BASE_LAT + random.uniform(-LAT_SPAN, LAT_SPAN)
    lng = BASE_LNG + random.uniform(-LNG_SPAN, LNG_SPAN)
    return lng, lat

def make_payload(user_prefix: str):
    lng, lat = random_point()
    return {
        "name": f"pandal-{user_prefix}-{uuid.uuid4().hex[:8]}",
        "description": "load test pandal",
        "area": random.choice(AREAS),
        "theme": random.choice(THEMES),
        "location": {"type": "Point", "coordinates": [lng, lat]},
        "images": [],
    }

print("[INIT] Locustfile loaded")

# ------------------- Single user class (seeds its own pandals) -------------------
class VisitorUser(HttpUser):
    # unify wait_time to cover both create & search cadences
    wait_time = between(min(CREATE_EVERY[0], SEARCH_EVERY[0]),
                        max(CREATE_EVERY[1], SEARCH_EVERY[1]))

    def on_start(self):
        self.user_prefix = uuid.uuid4().hex[:12]
        ok = 0
        for _ in range(PANDALS_PER_USER):
            r = self.client.post(f"{API_PREFIX}/pandals", json=make_payload(self.user_prefix),
                                 name="POST /pandals (seed-per-user)")
            if r.status_code < 300:
                ok += 1
        print(f"[SEED] base_url={self.client.base_url} | user={self.user_prefix} | seeded {ok}/{PANDALS_PER_USER}")

    @task(1)
    def create_pandal(self):
        r = self.client.post(f"{API_PREFIX}/pandals", json=make_payload(self.user_prefix),
                             name="POST /pandals")
        if r.status_code >= 300:
            print(f"[CREATE][ERR] status={r.status_code} body={r.text[:160]}")

    @task(5)
    def nearby_search(self):
        lng, lat = random_point()
        with self.client.get(
            f"{API_PREFIX}/pandals",
            params={"lng": lng, "lat": lat, "radius": RADIUS_M},
            name="GET /pandals (nearby)",
            catch_response=True,
        ) as resp:
            if resp.status_code != 200:
                resp.failure(f"Unexpected status {resp.status_code}")
            elif resp.json().get("data") is None:
                resp.failure("data is null")
