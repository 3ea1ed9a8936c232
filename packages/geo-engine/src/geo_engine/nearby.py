from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TypeVar

from geo_engine.distance import haversine_distance_km
from geo_engine.models import GeoPoint

T = TypeVar("T")


def rank_within_radius(
    origin: GeoPoint,
    candidates: Iterable[T],
    radius_km: float,
    locate: Callable[[T], GeoPoint],
) -> list[tuple[T, float]]:
    """Return `(candidate, distance_km)` pairs within `radius_km`, nearest first.

    Ties keep the input order (`sorted` is stable).
    """
    if radius_km < 0:
        raise ValueError("radius_km must be >= 0")
    ranked: list[tuple[T, float]] = []
    for candidate in candidates:
        distance_km = haversine_distance_km(origin, locate(candidate))
        if distance_km <= radius_km:
            ranked.append((candidate, distance_km))
    return sorted(ranked, key=lambda item: item[1])
