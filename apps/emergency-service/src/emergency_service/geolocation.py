from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from typing import Protocol

from geo_engine.models import Coordinate

from emergency_service.errors import LocationError, LocationTimeout, PermissionDenied, PositionUnavailable

logger = logging.getLogger(__name__)

FixCallback = Callable[[Coordinate], None]
ErrorCallback = Callable[[LocationError], None]

_DEVICE_ERRORS: dict[str, type[LocationError]] = {
    "PERMISSION_DENIED": PermissionDenied,
    "POSITION_UNAVAILABLE": PositionUnavailable,
    "TIMEOUT": LocationTimeout,
}


class Subscription:
    """Handle for a long-lived listener. `cancel()` may be called any number of times."""

    _ids = itertools.count(1)

    def __init__(self, on_cancel: Callable[[], None] | None = None) -> None:
        self.id = next(self._ids)
        self._on_cancel = on_cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            on_cancel()


class LocationProvider(Protocol):
    async def current_position(self, timeout_seconds: float) -> Coordinate: ...

    def subscribe(self, on_fix: FixCallback, on_error: ErrorCallback | None = None) -> Subscription: ...


def device_error(code: str, message: str | None = None) -> LocationError:
    error_type = _DEVICE_ERRORS.get(code.upper(), PositionUnavailable)
    return error_type(message)


class DeviceLocationFeed:
    """Location provider fed by fixes the device reports to the service.

    One-shot requests never return a cached position: they wait for the next
    fix reported after the request was made.
    """

    def __init__(self) -> None:
        self._listeners: dict[int, tuple[FixCallback, ErrorCallback | None]] = {}
        self._waiters: list[asyncio.Future[Coordinate]] = []
        self._permission_denied = False

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def report_fix(self, coordinate: Coordinate) -> None:
        self._permission_denied = False
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(coordinate)
        for on_fix, _ in list(self._listeners.values()):
            on_fix(coordinate)

    def report_error(self, error: LocationError) -> None:
        self._permission_denied = isinstance(error, PermissionDenied)
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)
        for _, on_error in list(self._listeners.values()):
            if on_error is not None:
                on_error(error)

    async def current_position(self, timeout_seconds: float) -> Coordinate:
        if self._permission_denied:
            raise PermissionDenied()
        waiter: asyncio.Future[Coordinate] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout=timeout_seconds)
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def subscribe(self, on_fix: FixCallback, on_error: ErrorCallback | None = None) -> Subscription:
        subscription = Subscription()
        self._listeners[subscription.id] = (on_fix, on_error)
        subscription._on_cancel = lambda: self._listeners.pop(subscription.id, None)
        return subscription


class GeolocationTracker:
    def __init__(self, provider: LocationProvider, timeout_seconds: float = 10.0) -> None:
        self._provider = provider
        self._timeout_seconds = timeout_seconds
        self._watches: dict[int, Subscription] = {}
        self._latest: Coordinate | None = None

    @property
    def latest(self) -> Coordinate | None:
        return self._latest

    @property
    def active_watch_count(self) -> int:
        return len(self._watches)

    async def request_once(self) -> Coordinate:
        try:
            coordinate = await self._provider.current_position(self._timeout_seconds)
        except (asyncio.TimeoutError, TimeoutError) as exc:
            logger.warning("location_timeout", extra={"timeout_seconds": self._timeout_seconds})
            raise LocationTimeout() from exc
        except LocationError as exc:
            logger.warning("location_failed", extra={"code": exc.code})
            raise
        self._latest = coordinate
        return coordinate

    def watch(self, on_update: FixCallback, on_error: ErrorCallback | None = None) -> Subscription:
        handle = Subscription()

        def _deliver(coordinate: Coordinate) -> None:
            if not handle.active:
                return
            self._latest = coordinate
            on_update(coordinate)

        def _deliver_error(error: LocationError) -> None:
            if handle.active and on_error is not None:
                on_error(error)

        upstream = self._provider.subscribe(_deliver, _deliver_error)

        def _release() -> None:
            upstream.cancel()
            self._watches.pop(handle.id, None)

        handle._on_cancel = _release
        self._watches[handle.id] = handle
        logger.debug("location_watch_started", extra={"watch_id": handle.id})
        return handle

    def cancel(self, handle: Subscription | None) -> None:
        if handle is None:
            return
        handle.cancel()

    def cancel_all(self) -> None:
        for handle in list(self._watches.values()):
            handle.cancel()
