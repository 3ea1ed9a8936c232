from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from geo_engine.models import Coordinate

from emergency_service.alerts import AlertStore, EmergencyAlert
from emergency_service.errors import (
    LocationError,
    LocationUnavailable,
    PersistenceError,
    SessionClosed,
    Unauthenticated,
)
from emergency_service.geolocation import GeolocationTracker, Subscription
from emergency_service.narration import Narrator

logger = logging.getLogger(__name__)

ACTIVATED_MESSAGE = "SOS activated. Emergency services have been notified. Help is on the way."
DEACTIVATED_MESSAGE = "SOS deactivated."


class SosState(str, Enum):
    IDLE = "idle"
    ACTIVATING = "activating"
    ACTIVE = "active"
    DEACTIVATING = "deactivating"


@dataclass
class SosSession:
    user_id: str
    alert_id: str
    rebroadcast: asyncio.Task[None]
    triggered: bool = field(default=True)


StateListener = Callable[[SosState], None]


class SosSessionManager:
    """Drives one user's SOS: Idle -> Activating -> Active -> Deactivating -> Idle.

    While active, the alert's position is re-broadcast on a fixed interval.
    Ticks run back to back inside a single task, so at most one write is in
    flight and at most one re-broadcast task exists.
    """

    def __init__(
        self,
        tracker: GeolocationTracker,
        store: AlertStore,
        narrator: Narrator | None = None,
        interval_seconds: float = 5.0,
    ) -> None:
        self._tracker = tracker
        self._store = store
        self._narrator = narrator
        self._interval_seconds = interval_seconds
        self._state = SosState.IDLE
        self._session: SosSession | None = None
        self._lock = asyncio.Lock()
        self._listeners: dict[int, StateListener] = {}
        self._rebroadcasts: set[asyncio.Task[None]] = set()
        self._lookup: asyncio.Task[Coordinate] | None = None
        self._closed = False

    @property
    def state(self) -> SosState:
        return self._state

    @property
    def session(self) -> SosSession | None:
        return self._session

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def running_rebroadcasts(self) -> int:
        return sum(1 for task in self._rebroadcasts if not task.done())

    def subscribe(self, listener: StateListener) -> Subscription:
        subscription = Subscription()
        self._listeners[subscription.id] = listener
        subscription._on_cancel = lambda: self._listeners.pop(subscription.id, None)
        return subscription

    async def start(self, user_id: str | None) -> EmergencyAlert:
        if not user_id:
            raise Unauthenticated()
        async with self._lock:
            self._ensure_open()
            if self._session is not None:
                logger.info("sos_restart", extra={"user_id": user_id, "alert_id": self._session.alert_id})
                await self._stop_locked(self._session, announce=False)
                self._ensure_open()

            self._set_state(SosState.ACTIVATING)
            try:
                coordinate = await self._locate()
            except LocationError as exc:
                self._set_state(SosState.IDLE)
                logger.warning("sos_location_failed", extra={"user_id": user_id, "code": exc.code})
                raise LocationUnavailable(exc.message) from exc
            except SessionClosed:
                self._set_state(SosState.IDLE)
                logger.info("sos_activation_aborted", extra={"user_id": user_id})
                raise

            try:
                alert = await self._store.upsert_active(user_id, coordinate.latitude, coordinate.longitude)
            except PersistenceError:
                self._set_state(SosState.IDLE)
                logger.error("sos_alert_write_failed", extra={"user_id": user_id})
                raise
            if self._closed:
                # The alert stays active, same as any other teardown.
                self._set_state(SosState.IDLE)
                logger.info("sos_activation_aborted", extra={"user_id": user_id, "alert_id": alert.id})
                raise SessionClosed()

            self._session = SosSession(
                user_id=user_id,
                alert_id=alert.id,
                rebroadcast=self._spawn_rebroadcast(alert.id),
            )
            self._set_state(SosState.ACTIVE)
            logger.warning("sos_activated", extra={"user_id": user_id, "alert_id": alert.id})
            if self._narrator is not None:
                self._narrator.say(ACTIVATED_MESSAGE)
            return alert

    async def stop(self) -> EmergencyAlert | None:
        async with self._lock:
            if self._session is None:
                return None
            return await self._stop_locked(self._session, announce=True)

    async def aclose(self) -> None:
        """Cancel any running re-broadcast or activation without touching the stored alert.

        The manager cannot be started again afterwards.
        """
        self._closed = True
        if self._lookup is not None and not self._lookup.done():
            self._lookup.cancel()
        tasks = [task for task in self._rebroadcasts if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        self._session = None
        self._set_state(SosState.IDLE)

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosed()

    async def _locate(self) -> Coordinate:
        lookup = asyncio.get_running_loop().create_task(self._tracker.request_once())
        self._lookup = lookup
        try:
            return await lookup
        except asyncio.CancelledError:
            if self._closed and lookup.cancelled():
                raise SessionClosed() from None
            raise
        finally:
            self._lookup = None

    async def _stop_locked(self, session: SosSession, announce: bool) -> EmergencyAlert:
        self._set_state(SosState.DEACTIVATING)
        session.rebroadcast.cancel()
        await asyncio.wait({session.rebroadcast})
        try:
            alert = await self._store.resolve(session.alert_id)
        except PersistenceError:
            if self._closed:
                self._set_state(SosState.IDLE)
                raise
            # The alert is still active: keep re-broadcasting until a stop succeeds.
            session.rebroadcast = self._spawn_rebroadcast(session.alert_id)
            self._set_state(SosState.ACTIVE)
            logger.error("sos_resolve_failed", extra={"user_id": session.user_id, "alert_id": session.alert_id})
            raise
        session.triggered = False
        self._session = None
        self._set_state(SosState.IDLE)
        logger.info("sos_deactivated", extra={"user_id": session.user_id, "alert_id": session.alert_id})
        if announce and self._narrator is not None:
            self._narrator.say(DEACTIVATED_MESSAGE)
        return alert

    def _spawn_rebroadcast(self, alert_id: str) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(self._rebroadcast(alert_id))
        self._rebroadcasts.add(task)
        task.add_done_callback(self._on_rebroadcast_done)
        return task

    async def _rebroadcast(self, alert_id: str) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                coordinate = await self._tracker.request_once()
                await self._store.update_location(alert_id, coordinate.latitude, coordinate.longitude)
            except (LocationError, PersistenceError) as exc:
                logger.warning("sos_rebroadcast_skipped", extra={"alert_id": alert_id, "code": exc.code})
                continue
            logger.debug(
                "sos_rebroadcast",
                extra={"alert_id": alert_id, "lat": coordinate.latitude, "lng": coordinate.longitude},
            )

    def _on_rebroadcast_done(self, task: asyncio.Task[None]) -> None:
        self._rebroadcasts.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("sos_rebroadcast_crashed", extra={"error": repr(exc)})

    def _set_state(self, state: SosState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners.values()):
            listener(state)
