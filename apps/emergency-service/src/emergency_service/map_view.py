from __future__ import annotations

from typing import Any

import folium
from geo_engine.models import Coordinate, GeoPoint

from emergency_service.routing import Route

ROUTE_COLOR = "#dc2626"
ROUTE_WEIGHT = 6
DEFAULT_ZOOM = 15

_PULSE_CSS = """
<style>
.sos-pulse {
  width: 25px;
  height: 25px;
  border-radius: 50%;
  background: #dc2626;
  animation: sos-pulse 1.2s infinite;
}
@keyframes sos-pulse {
  0% { transform: scale(1); }
  50% { transform: scale(1.3); }
  100% { transform: scale(1); }
}
</style>
"""


class MapPresenter:
    """Presentation state for the emergency map.

    The camera follows the user: every position update recenters the view
    and keeps the current zoom. A route overlay is only kept while it still
    leads to the current destination.
    """

    def __init__(self, zoom: int = DEFAULT_ZOOM) -> None:
        self._zoom = zoom
        self._center: GeoPoint | None = None
        self._user: Coordinate | None = None
        self._destination: GeoPoint | None = None
        self._destination_label = "Hospital / Destination"
        self._route: Route | None = None
        self._sos_active = False

    @property
    def center(self) -> GeoPoint | None:
        return self._center

    @property
    def zoom(self) -> int:
        return self._zoom

    @property
    def route(self) -> Route | None:
        return self._route

    @property
    def sos_active(self) -> bool:
        return self._sos_active

    def set_zoom(self, zoom: int) -> None:
        if not 0 <= zoom <= 19:
            raise ValueError("zoom must be between 0 and 19")
        self._zoom = zoom

    def update_user(self, coordinate: Coordinate) -> None:
        self._user = coordinate
        self._center = coordinate.point

    def set_destination(self, point: GeoPoint | None, label: str | None = None) -> None:
        if point != self._destination:
            self._route = None
        self._destination = point
        if label:
            self._destination_label = label

    def show_route(self, route: Route | None) -> None:
        if route is not None and route.destination.point != self._destination:
            return
        self._route = route

    def set_sos_active(self, active: bool) -> None:
        self._sos_active = active

    def snapshot(self) -> dict[str, Any]:
        route = self._route
        return {
            "center": _point(self._center),
            "zoom": self._zoom,
            "user": _point(self._user.point) if self._user else None,
            "destination": _point(self._destination),
            "destination_label": self._destination_label,
            "destination_style": "pulse" if self._sos_active else "default",
            "sos_active": self._sos_active,
            "route": None
            if route is None
            else {
                "geometry": [[item.lat, item.lng] for item in route.geometry],
                "total_distance_meters": route.total_distance_meters,
                "total_duration_seconds": route.total_duration_seconds,
            },
        }

    def render(self) -> folium.Map:
        center = self._center or self._destination or GeoPoint(lat=0.0, lng=0.0)
        fmap = folium.Map(location=[center.lat, center.lng], zoom_start=self._zoom, tiles="OpenStreetMap")
        if self._user is not None:
            folium.Marker(
                [self._user.latitude, self._user.longitude],
                popup="You are here",
                icon=folium.Icon(color="blue", icon="user"),
            ).add_to(fmap)
        if self._destination is not None:
            self._add_destination(fmap, self._destination)
        if self._route is not None and self._route.geometry:
            folium.PolyLine(
                [[item.lat, item.lng] for item in self._route.geometry],
                color=ROUTE_COLOR,
                weight=ROUTE_WEIGHT,
            ).add_to(fmap)
        return fmap

    def render_html(self) -> str:
        return self.render().get_root().render()

    def _add_destination(self, fmap: folium.Map, point: GeoPoint) -> None:
        location = [point.lat, point.lng]
        if not self._sos_active:
            folium.Marker(location, popup=self._destination_label, icon=folium.Icon(color="red", icon="plus")).add_to(fmap)
            return
        fmap.get_root().header.add_child(folium.Element(_PULSE_CSS))
        folium.Marker(
            location,
            popup=self._destination_label,
            icon=folium.DivIcon(html='<div class="sos-pulse"></div>', icon_size=(25, 25), icon_anchor=(12, 12)),
        ).add_to(fmap)


def _point(point: GeoPoint | None) -> dict[str, float] | None:
    if point is None:
        return None
    return {"lat": point.lat, "lng": point.lng}
