from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from models import Pandal, PandalCreate


def is_zero_time(t: Optional[datetime]) -> bool:
    # the instant 0001-01-01T00:00:00Z; naive times count as UTC
    if t is None:
        return True
    offset = t.utcoffset() or timedelta(0)
    try:
        return t.replace(tzinfo=None) == datetime.min + offset
    except OverflowError:
        # west of UTC, local wall time would precede datetime.min
        return False


def assemble_pandal(candidate: PandalCreate, now: Optional[datetime] = None) -> Pandal:
    """Server-side record for a client candidate: fresh id, images and createdAt defaulted."""
    return Pandal(
        id=uuid4().hex,
        name=candidate.name,
        description=candidate.description,
        area=candidate.area,
        theme=candidate.theme,
        location=candidate.location,
        images=candidate.images if candidate.images is not None else [],
        rating_avg=candidate.rating_avg,
        rating_count=candidate.rating_count,
        created_at=(now or datetime.now(timezone.utc)) if is_zero_time(candidate.created_at) else candidate.created_at,
    )
