from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class Coordinate:
    """A device position fix, immutable once captured."""

    latitude: float
    longitude: float
    accuracy_meters: float = 0.0
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(lat=self.latitude, lng=self.longitude)
