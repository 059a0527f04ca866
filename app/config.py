# config.py
# Environment-driven settings for the pandal service.

import os

# ---- Store ----
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_POOL_MAX = int(os.getenv("REDIS_POOL_MAX", "100"))
PANDAL_DB = os.getenv("PANDAL_DB", "pandal_hopping")
PANDAL_COLLECTION = os.getenv("PANDAL_COLLECTION", "pandals")

# ---- Requests ----
STORE_TIMEOUT_S = float(os.getenv("STORE_TIMEOUT_S", "10"))
DEFAULT_RADIUS_M = float(os.getenv("DEFAULT_RADIUS_M", "5000"))

# ---- HTTP ----
API_PREFIX = os.getenv("API_PREFIX", "").rstrip("/")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

LOCATION_INDEX = "location_2dsphere_index"
