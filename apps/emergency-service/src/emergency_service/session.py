from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from geo_engine.distance import haversine_distance_meters
from geo_engine.models import Coordinate

from emergency_service.alerts import AlertStore, EmergencyAlert
from emergency_service.errors import RouteUnavailable
from emergency_service.facilities import FacilityCategory, NearbyFacilitiesResult, NearbyFacilityResolver
from emergency_service.geolocation import DeviceLocationFeed, GeolocationTracker, Subscription
from emergency_service.map_view import MapPresenter
from emergency_service.narration import ClipSource, Narrator, SpeechClip
from emergency_service.routing import Route, RouteEngineAdapter
from emergency_service.sos import SosSessionManager, SosState

logger = logging.getLogger(__name__)


class EmergencySession:
    """Everything one user's emergency screen owns, wired together.

    Location fixes move the map camera and, once a destination is selected,
    re-route when the user has moved past `reroute_threshold_meters`.
    """

    def __init__(
        self,
        user_id: str,
        feed: DeviceLocationFeed,
        tracker: GeolocationTracker,
        resolver: NearbyFacilityResolver,
        routes: RouteEngineAdapter,
        sos: SosSessionManager,
        map_view: MapPresenter,
        narrator: Narrator,
        announcements: Narrator,
        reroute_threshold_meters: float = 25.0,
    ) -> None:
        self.user_id = user_id
        self.feed = feed
        self.tracker = tracker
        self.resolver = resolver
        self.routes = routes
        self.sos = sos
        self.map_view = map_view
        self.narrator = narrator
        self.announcements = announcements
        self._reroute_threshold_meters = reroute_threshold_meters
        self._destination: Coordinate | None = None
        self._reroute: asyncio.Task[Route | None] | None = None
        self._subscriptions = [
            routes.subscribe(map_view.show_route),
            sos.subscribe(lambda state: map_view.set_sos_active(state is SosState.ACTIVE)),
        ]
        self._watch: Subscription | None = tracker.watch(self._on_fix)

    @property
    def destination(self) -> Coordinate | None:
        return self._destination

    async def nearby_facilities(
        self,
        radius_km: float,
        category: FacilityCategory | None = None,
    ) -> NearbyFacilitiesResult:
        origin = self.tracker.latest or await self.tracker.request_once()
        return await self.resolver.resolve(origin, radius_km, category)

    async def route_to(self, destination: Coordinate, origin: Coordinate | None = None) -> Route | None:
        if origin is not None:
            self.map_view.update_user(origin)
        start = origin or self.tracker.latest or await self.tracker.request_once()
        self._destination = destination
        self.map_view.set_destination(destination.point)
        return await self.routes.compute_route(start, destination)

    def clear_route(self) -> None:
        self._destination = None
        self.map_view.set_destination(None)
        self.routes.teardown()

    async def start_sos(self) -> EmergencyAlert:
        return await self.sos.start(self.user_id)

    async def stop_sos(self) -> EmergencyAlert | None:
        return await self.sos.stop()

    def speech_clips(self) -> list[SpeechClip]:
        clips: list[SpeechClip] = []
        for narrator in (self.announcements, self.narrator):
            if isinstance(narrator.announcer, ClipSource):
                clips.extend(narrator.announcer.clips)
        return clips

    def speech_clip(self, name: str) -> SpeechClip | None:
        for narrator in (self.announcements, self.narrator):
            if isinstance(narrator.announcer, ClipSource):
                clip = narrator.announcer.clip(name)
                if clip is not None:
                    return clip
        return None

    async def aclose(self) -> None:
        self.tracker.cancel(self._watch)
        self._watch = None
        self.tracker.cancel_all()
        if self._reroute is not None and not self._reroute.done():
            self._reroute.cancel()
        self.routes.teardown()
        self.narrator.cancel()
        await self.sos.aclose()
        self.announcements.cancel()
        for subscription in self._subscriptions:
            subscription.cancel()

    def _on_fix(self, coordinate: Coordinate) -> None:
        self.map_view.update_user(coordinate)
        destination = self._destination
        route = self.routes.active_route
        if destination is None or route is None:
            return
        moved = haversine_distance_meters(route.origin.point, coordinate.point)
        if moved < self._reroute_threshold_meters:
            return
        logger.info("reroute_requested", extra={"user_id": self.user_id, "moved_meters": round(moved, 1)})
        self._reroute = asyncio.get_running_loop().create_task(self.routes.compute_route(coordinate, destination))
        self._reroute.add_done_callback(self._on_reroute_done)

    def _on_reroute_done(self, task: asyncio.Task[Route | None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, RouteUnavailable):
            logger.warning("reroute_failed", extra={"user_id": self.user_id, "error": exc.message})
        elif exc is not None:
            logger.error("reroute_crashed", extra={"user_id": self.user_id, "error": repr(exc)})


SessionFactory = Callable[[str], EmergencySession]


class EmergencySessionRegistry:
    def __init__(self, factory: SessionFactory) -> None:
        self._factory = factory
        self._sessions: dict[str, EmergencySession] = {}

    def get(self, user_id: str) -> EmergencySession | None:
        return self._sessions.get(user_id)

    def get_or_create(self, user_id: str) -> EmergencySession:
        session = self._sessions.get(user_id)
        if session is None:
            session = self._factory(user_id)
            self._sessions[user_id] = session
            logger.info("emergency_session_created", extra={"user_id": user_id})
        return session

    async def close(self, user_id: str) -> None:
        session = self._sessions.pop(user_id, None)
        if session is not None:
            await session.aclose()

    async def close_all(self) -> None:
        for user_id in list(self._sessions):
            await self.close(user_id)


def build_session_factory(
    *,
    store: AlertStore,
    resolver: NearbyFacilityResolver,
    route_engine_factory: Callable[[Narrator], RouteEngineAdapter],
    narrator_factory: Callable[[str, str], Narrator],
    location_timeout_seconds: float = 10.0,
    rebroadcast_interval_seconds: float = 5.0,
) -> SessionFactory:
    def _factory(user_id: str) -> EmergencySession:
        feed = DeviceLocationFeed()
        tracker = GeolocationTracker(feed, timeout_seconds=location_timeout_seconds)
        narrator = narrator_factory(user_id, "route")
        # Route narration and SOS announcements are cancelled independently.
        announcements = narrator_factory(user_id, "sos")
        return EmergencySession(
            user_id=user_id,
            feed=feed,
            tracker=tracker,
            resolver=resolver,
            routes=route_engine_factory(narrator),
            sos=SosSessionManager(
                tracker,
                store,
                narrator=announcements,
                interval_seconds=rebroadcast_interval_seconds,
            ),
            map_view=MapPresenter(),
            narrator=narrator,
            announcements=announcements,
        )

    return _factory
