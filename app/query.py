# query.py
# lng/lat/radius query params -> store filter for GET /pandals

from typing import Any, Dict, Optional

from config import DEFAULT_RADIUS_M
from models import GeoNear, GeoPoint


class BadCoordinates(ValueError):
    pass


def _parse_float(s: str) -> Optional[float]:
    """Decimal or hex (0x1p-2) float; no surrounding blanks or digit separators."""
    if s != s.strip() or "_" in s:
        return None
    try:
        if "0x" in s.lower():
            # hex needs a binary exponent
            return float.fromhex(s) if "p" in s.lower() else None
        return float(s)
    except ValueError:
        return None


def build_filter(lng: Optional[str], lat: Optional[str], radius: Optional[str] = None,
                 default_radius: float = DEFAULT_RADIUS_M) -> Dict[str, Any]:
    """
    Both coordinates absent -> {} (list everything).
    Exactly one present     -> BadCoordinates.
    Both present            -> {"location": GeoNear}, nearest first.

    An unparsable radius is ignored in favour of default_radius.
    """
    if not lng and not lat:
        return {}
    if not lng or not lat:
        raise BadCoordinates("Both lng and lat query parameters are required for a geospatial search")

    x, y = _parse_float(lng), _parse_float(lat)
    if x is None or y is None:
        raise BadCoordinates("Invalid lng or lat coordinates")

    max_distance = default_radius
    if radius:
        r = _parse_float(radius)
        if r is not None:
            max_distance = r

    return {
        "location": GeoNear(
            geometry=GeoPoint(type="Point", coordinates=[x, y]),
            max_distance=max_distance,
        )
    }
