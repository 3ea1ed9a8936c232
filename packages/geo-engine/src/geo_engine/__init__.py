"""Geo engine core package."""

from geo_engine.distance import EARTH_RADIUS_KM, haversine_distance_km, haversine_distance_meters
from geo_engine.models import Coordinate, GeoPoint
from geo_engine.nearby import rank_within_radius

__all__ = [
    "EARTH_RADIUS_KM",
    "Coordinate",
    "GeoPoint",
    "haversine_distance_km",
    "haversine_distance_meters",
    "rank_within_radius",
]
