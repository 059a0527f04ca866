# migrations.py
# Index creation that must finish before the service takes traffic.

import logging

from redis.exceptions import RedisError

from config import LOCATION_INDEX, STORE_TIMEOUT_S
from pandal_store import Deadline, PandalStore, StoreError

logger = logging.getLogger("pandal.migrations")


async def run_migrations(store: PandalStore, timeout: float = STORE_TIMEOUT_S) -> str:
    """Ensure the 2dsphere index on location exists; exits the process if it cannot."""
    logger.info("Running migrations...")
    try:
        name = await store.create_geo_index("location", LOCATION_INDEX, Deadline(timeout))
    except (StoreError, RedisError) as e:
        logger.critical("Failed to create geospatial index: %s", e)
        raise SystemExit(1) from e
    logger.info("Migration successful: Created index %s", name)
    return name
