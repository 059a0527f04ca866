from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class GeoPoint(BaseModel):
    # shape only; the geo index decides what a valid point is
    type: str
    coordinates: List[float]  # [lng, lat]


class PandalCreate(BaseModel):
    """Client-supplied candidate for POST /pandals."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    area: str = ""
    theme: str = ""
    location: GeoPoint
    images: Optional[List[str]] = None
    rating_avg: float = Field(0.0, alias="ratingAvg")
    rating_count: int = Field(0, ge=0, alias="ratingCount")
    created_at: Optional[datetime] = Field(None, alias="createdAt")


class Pandal(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    description: str = ""
    area: str = ""
    theme: str = ""
    location: GeoPoint
    images: List[str] = Field(default_factory=list)
    rating_avg: float = Field(0.0, alias="ratingAvg")
    rating_count: int = Field(0, alias="ratingCount")
    created_at: datetime = Field(alias="createdAt")

    def to_doc(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class InsertAck(BaseModel):
    inserted_id: str
    acknowledged: bool = True


class GeoNear(BaseModel):
    """Proximity constraint: within max_distance meters of geometry, nearest first."""
    geometry: GeoPoint
    max_distance: float
