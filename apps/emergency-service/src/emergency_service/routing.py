from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from geo_engine.models import Coordinate, GeoPoint

from emergency_service.circuit_breaker import CircuitBreaker, CircuitOpenError
from emergency_service.errors import RouteUnavailable
from emergency_service.geolocation import Subscription
from emergency_service.narration import Narrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteInstruction:
    text: str
    distance_meters: float = 0.0
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class Route:
    waypoints: tuple[Coordinate, Coordinate]
    geometry: tuple[GeoPoint, ...]
    total_distance_meters: float
    total_duration_seconds: float
    instructions: tuple[RouteInstruction, ...]

    @property
    def origin(self) -> Coordinate:
        return self.waypoints[0]

    @property
    def destination(self) -> Coordinate:
        return self.waypoints[1]


class RoutingClient(Protocol):
    async def fetch_route(self, origin: Coordinate, destination: Coordinate) -> Route: ...


_COMPASS = ("north", "northeast", "east", "southeast", "south", "southwest", "west", "northwest")
_ORDINALS = ("first", "second", "third", "fourth", "fifth", "sixth", "seventh", "eighth", "ninth", "tenth")


def _compass(bearing: float | None) -> str:
    if bearing is None:
        return ""
    return _COMPASS[int(((bearing % 360) + 22.5) // 45) % 8]


def _onto(name: str) -> str:
    return f" onto {name}" if name else ""


def format_instruction(step: dict[str, Any]) -> str:
    """Render an OSRM step as an English sentence."""
    maneuver = step.get("maneuver") or {}
    kind = maneuver.get("type", "")
    modifier = maneuver.get("modifier", "")
    name = step.get("name") or ""

    if kind == "depart":
        direction = _compass(maneuver.get("bearing_after"))
        heading = f"Head {direction}" if direction else "Head out"
        return f"{heading} on {name}" if name else heading
    if kind == "arrive":
        return "You have arrived at your destination"
    if modifier == "uturn":
        return f"Make a U-turn{_onto(name)}"
    if kind in {"roundabout", "rotary"}:
        exit_number = int(maneuver.get("exit") or 1)
        ordinal = _ORDINALS[exit_number - 1] if exit_number <= len(_ORDINALS) else f"{exit_number}th"
        return f"Enter the roundabout and take the {ordinal} exit{_onto(name)}"
    if kind == "turn":
        return f"Turn {modifier}{_onto(name)}" if modifier else f"Turn{_onto(name)}"
    if kind == "end of road":
        return f"Turn {modifier} at the end of the road{_onto(name)}"
    if kind == "fork":
        return f"Keep {modifier} at the fork{_onto(name)}"
    if kind == "merge":
        return " ".join(part for part in ("Merge", modifier) if part) + _onto(name)
    if kind == "on ramp":
        return f"Take the ramp on the {modifier}{_onto(name)}" if modifier else f"Take the ramp{_onto(name)}"
    if kind == "off ramp":
        return f"Take the exit on the {modifier}{_onto(name)}" if modifier else f"Take the exit{_onto(name)}"
    if modifier and modifier != "straight":
        return f"Continue {modifier}{_onto(name)}"
    return f"Continue{_onto(name)}" if name else "Continue straight"


class OsrmRoutingClient:
    def __init__(
        self,
        base_url: str = "https://router.project-osrm.org/route/v1",
        profile: str = "driving",
        timeout_seconds: float = 10.0,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._profile = profile
        self._timeout_seconds = timeout_seconds
        self._client_factory = client_factory

    async def fetch_route(self, origin: Coordinate, destination: Coordinate) -> Route:
        path = f"{origin.longitude},{origin.latitude};{destination.longitude},{destination.latitude}"
        params = {"overview": "full", "geometries": "geojson", "steps": "true"}
        try:
            factory = self._client_factory or (lambda: httpx.AsyncClient(timeout=self._timeout_seconds))
            async with factory() as client:
                response = await client.get(f"{self._base_url}/{self._profile}/{path}", params=params)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise RouteUnavailable("Routing service timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise RouteUnavailable("Routing service returned an error") from exc
        except httpx.HTTPError as exc:
            raise RouteUnavailable("Routing service is unreachable") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise RouteUnavailable("Routing service returned malformed data") from exc
        if not isinstance(payload, dict):
            raise RouteUnavailable("Routing service returned malformed data")
        routes = payload.get("routes") or []
        if payload.get("code") != "Ok" or not routes:
            raise RouteUnavailable("No route found")
        try:
            return self._to_route(origin, destination, routes[0])
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise RouteUnavailable("Routing service returned malformed data") from exc

    def _to_route(self, origin: Coordinate, destination: Coordinate, raw: dict[str, Any]) -> Route:
        coordinates = (raw.get("geometry") or {}).get("coordinates") or []
        steps = [step for leg in raw.get("legs") or [] for step in leg.get("steps") or []]
        return Route(
            waypoints=(origin, destination),
            geometry=tuple(GeoPoint(lat=float(lat), lng=float(lng)) for lng, lat in coordinates),
            total_distance_meters=max(0.0, float(raw.get("distance", 0.0))),
            total_duration_seconds=max(0.0, float(raw.get("duration", 0.0))),
            instructions=tuple(
                RouteInstruction(
                    text=format_instruction(step),
                    distance_meters=float(step.get("distance", 0.0)),
                    duration_seconds=float(step.get("duration", 0.0)),
                )
                for step in steps
            ),
        )


RouteListener = Callable[[Route | None], None]
_PairKey = tuple[GeoPoint, GeoPoint]


class RouteEngineAdapter:
    """Keeps exactly one authoritative route per session.

    Every new origin/destination pair tears down the current route and its
    narration before the routing request starts; responses belonging to a
    superseded request are discarded.
    """

    def __init__(
        self,
        client: RoutingClient,
        narrator: Narrator | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self._client = client
        self._narrator = narrator
        self._circuit_breaker = circuit_breaker or CircuitBreaker("routing")
        self._listeners: dict[int, RouteListener] = {}
        self._generation = 0
        self._active: Route | None = None
        self._active_key: _PairKey | None = None
        self._inflight: asyncio.Task[Route | None] | None = None
        self._inflight_key: _PairKey | None = None

    @property
    def active_route(self) -> Route | None:
        return self._active

    def subscribe(self, listener: RouteListener) -> Subscription:
        subscription = Subscription()
        self._listeners[subscription.id] = listener
        subscription._on_cancel = lambda: self._listeners.pop(subscription.id, None)
        return subscription

    async def compute_route(self, origin: Coordinate, destination: Coordinate) -> Route | None:
        """Return the new route, or None when a newer request superseded this one.

        Raises RouteUnavailable when the routing service fails for the
        current request; the previous route has already been removed.
        """
        key = (origin.point, destination.point)
        if self._inflight is not None and not self._inflight.done() and self._inflight_key == key:
            task = self._inflight
        elif self._active is not None and self._active_key == key:
            return self._active
        else:
            task = self._start(origin, destination, key)
        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    def teardown(self) -> None:
        self._generation += 1
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None
        self._inflight_key = None
        self._clear_active()

    def _start(self, origin: Coordinate, destination: Coordinate, key: _PairKey) -> asyncio.Task[Route | None]:
        self.teardown()
        generation = self._generation
        task = asyncio.get_running_loop().create_task(self._resolve(origin, destination, key, generation))
        self._inflight = task
        self._inflight_key = key
        return task

    async def _resolve(
        self,
        origin: Coordinate,
        destination: Coordinate,
        key: _PairKey,
        generation: int,
    ) -> Route | None:
        try:
            route = await self._circuit_breaker.call(lambda: self._client.fetch_route(origin, destination))
        except CircuitOpenError as exc:
            error = RouteUnavailable("Routing service temporarily unavailable")
            error.__cause__ = exc
            return self._fail(error, generation)
        except RouteUnavailable as exc:
            return self._fail(exc, generation)

        if generation != self._generation:
            logger.info("route_superseded", extra={"generation": generation})
            return None
        self._inflight = None
        self._inflight_key = None
        self._active = route
        self._active_key = key
        logger.info(
            "route_installed",
            extra={
                "distance_meters": route.total_distance_meters,
                "duration_seconds": route.total_duration_seconds,
                "steps": len(route.instructions),
            },
        )
        self._notify(route)
        if self._narrator is not None:
            self._narrator.narrate([item.text for item in route.instructions])
        return route

    def _fail(self, error: RouteUnavailable, generation: int) -> None:
        if generation != self._generation:
            logger.info("route_superseded", extra={"generation": generation})
            return None
        self._inflight = None
        self._inflight_key = None
        logger.warning("route_unavailable", extra={"error": error.message})
        raise error

    def _clear_active(self) -> None:
        if self._narrator is not None:
            self._narrator.cancel()
        had_route = self._active is not None
        self._active = None
        self._active_key = None
        if had_route:
            self._notify(None)

    def _notify(self, route: Route | None) -> None:
        for listener in list(self._listeners.values()):
            listener(route)
