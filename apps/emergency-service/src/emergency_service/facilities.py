from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Protocol

import httpx
from geo_engine.models import Coordinate, GeoPoint
from geo_engine.nearby import rank_within_radius

from emergency_service.errors import ResolutionError

logger = logging.getLogger(__name__)


class FacilityCategory(str, Enum):
    HOSPITAL = "hospital"
    CLINIC = "clinic"
    PHARMACY = "pharmacy"
    EMERGENCY = "emergency"
    MENTAL_HEALTH = "mental-health"


@dataclass(frozen=True)
class Facility:
    id: str
    name: str
    category: FacilityCategory
    address: str
    phone: str
    lat: float
    lng: float
    distance_km: float | None = None
    rating: float | None = None
    hours: str | None = None

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lng=self.lng)


@dataclass(frozen=True)
class NearbyFacilitiesResult:
    facilities: list[Facility]
    error: str | None = None


class FacilityDirectory(Protocol):
    async def candidates(
        self,
        origin: GeoPoint,
        radius_km: float,
        category: FacilityCategory | None,
    ) -> list[Facility]: ...


class InMemoryFacilityDirectory:
    def __init__(self, facilities: Iterable[Facility] = ()) -> None:
        self._facilities = list(facilities)

    async def candidates(
        self,
        origin: GeoPoint,
        radius_km: float,
        category: FacilityCategory | None,
    ) -> list[Facility]:
        _ = (origin, radius_km, category)
        return list(self._facilities)


_CATEGORY_SELECTORS: dict[FacilityCategory, tuple[str, ...]] = {
    FacilityCategory.HOSPITAL: ('["amenity"="hospital"]',),
    FacilityCategory.CLINIC: ('["amenity"="clinic"]', '["amenity"="doctors"]'),
    FacilityCategory.PHARMACY: ('["amenity"="pharmacy"]',),
    FacilityCategory.EMERGENCY: ('["emergency"="yes"]["amenity"="hospital"]',),
    FacilityCategory.MENTAL_HEALTH: ('["healthcare"="psychotherapist"]', '["healthcare:speciality"="psychiatry"]'),
}


def build_overpass_query(origin: GeoPoint, radius_km: float, category: FacilityCategory | None) -> str:
    categories = [category] if category else list(FacilityCategory)
    selectors = dict.fromkeys(selector for item in categories for selector in _CATEGORY_SELECTORS[item])
    around = f"(around:{int(round(radius_km * 1000))},{origin.lat},{origin.lng})"
    statements = [
        f"  {kind}{selector}{around};"
        for selector in selectors
        for kind in ("node", "way", "relation")
    ]
    return "[out:json][timeout:25];\n(\n" + "\n".join(statements) + "\n);\nout center tags;"


def classify_tags(tags: dict[str, Any]) -> FacilityCategory:
    amenity = tags.get("amenity")
    if tags.get("healthcare") == "psychotherapist" or tags.get("healthcare:speciality") == "psychiatry":
        return FacilityCategory.MENTAL_HEALTH
    if amenity == "hospital":
        return FacilityCategory.EMERGENCY if tags.get("emergency") == "yes" else FacilityCategory.HOSPITAL
    if amenity in {"clinic", "doctors"}:
        return FacilityCategory.CLINIC
    if amenity == "pharmacy":
        return FacilityCategory.PHARMACY
    return FacilityCategory.HOSPITAL


def _address(tags: dict[str, Any]) -> str:
    if tags.get("addr:full"):
        return str(tags["addr:full"])
    street = tags.get("addr:street")
    if street:
        number = tags.get("addr:housenumber")
        return f"{number} {street}" if number else str(street)
    return str(tags.get("address", ""))


def parse_overpass_element(element: Any) -> Facility | None:
    """Map one Overpass element to a facility, or None when it is unusable."""
    if not isinstance(element, dict) or element.get("id") is None:
        return None
    tags = element.get("tags") or {}
    center = element.get("center") or {}
    if not isinstance(tags, dict) or not isinstance(center, dict):
        return None
    try:
        lat = float(element.get("lat", center.get("lat")))
        lng = float(element.get("lon", center.get("lon")))
    except (TypeError, ValueError):
        return None
    category = classify_tags(tags)
    label = category.value.replace("-", " ").title()
    return Facility(
        id=f"{element.get('type', 'node')}/{element['id']}",
        name=str(tags.get("name") or f"Unnamed {label}"),
        category=category,
        address=_address(tags),
        phone=str(tags.get("phone") or tags.get("contact:phone") or ""),
        lat=lat,
        lng=lng,
        hours=tags.get("opening_hours"),
    )


class OverpassFacilityDirectory:
    """Live OpenStreetMap directory queried through the Overpass API."""

    def __init__(
        self,
        base_url: str = "https://overpass-api.de/api/interpreter",
        timeout_seconds: float = 10.0,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._client_factory = client_factory

    async def candidates(
        self,
        origin: GeoPoint,
        radius_km: float,
        category: FacilityCategory | None,
    ) -> list[Facility]:
        query = build_overpass_query(origin, radius_km, category)
        try:
            factory = self._client_factory or (lambda: httpx.AsyncClient(timeout=self._timeout_seconds))
            async with factory() as client:
                response = await client.post(self._base_url, data={"data": query})
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ResolutionError("Facility directory timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise ResolutionError("Facility directory returned an error") from exc
        except httpx.HTTPError as exc:
            raise ResolutionError("Failed to fetch facilities") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ResolutionError("Facility directory returned malformed data") from exc
        elements = payload.get("elements", []) if isinstance(payload, dict) else None
        if not isinstance(elements, list):
            raise ResolutionError("Facility directory returned malformed data")
        facilities = [parse_overpass_element(element) for element in elements]
        return [item for item in facilities if item is not None]


class NearbyFacilityResolver:
    def __init__(self, directory: FacilityDirectory) -> None:
        self._directory = directory

    async def resolve(
        self,
        origin: Coordinate | GeoPoint,
        radius_km: float,
        category: FacilityCategory | None = None,
    ) -> NearbyFacilitiesResult:
        if radius_km < 0:
            raise ValueError("radius_km must be >= 0")
        center = origin.point if isinstance(origin, Coordinate) else origin
        try:
            candidates = await self._directory.candidates(center, radius_km, category)
        except ResolutionError as exc:
            logger.warning("facility_resolution_failed", extra={"error": exc.message})
            return NearbyFacilitiesResult(facilities=[], error=exc.message)

        if category is not None:
            candidates = [item for item in candidates if item.category == category]
        ranked = rank_within_radius(center, candidates, radius_km, locate=lambda item: item.point)
        facilities = [replace(item, distance_km=distance_km) for item, distance_km in ranked]
        logger.info(
            "facilities_resolved",
            extra={"radius_km": radius_km, "category": category.value if category else "*", "count": len(facilities)},
        )
        return NearbyFacilitiesResult(facilities=facilities)


def open_in_maps_url(lat: float, lng: float) -> str:
    return f"https://www.openstreetmap.org/?mlat={lat}&mlon={lng}#map=18/{lat}/{lng}"
