from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ApiError(Exception):
    code: str
    message: str
    status_code: int


class EmergencyError(Exception):
    """Base class for expected, user-visible failures."""

    code = "EMERGENCY_ERROR"
    default_message = "Emergency service failure"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class LocationError(EmergencyError):
    """A device location request failed."""


class PermissionDenied(LocationError):
    code = "PERMISSION_DENIED"
    default_message = "Location permission denied. Please enable location services."


class PositionUnavailable(LocationError):
    code = "POSITION_UNAVAILABLE"
    default_message = "Location information unavailable."


class LocationTimeout(LocationError):
    code = "LOCATION_TIMEOUT"
    default_message = "Location request timed out."


class LocationUnavailable(EmergencyError):
    """SOS could not capture a position to broadcast."""

    code = "LOCATION_UNAVAILABLE"
    default_message = "Unable to determine your location for SOS."


class RouteUnavailable(EmergencyError):
    code = "ROUTE_UNAVAILABLE"
    default_message = "Route could not be calculated."


class ResolutionError(EmergencyError):
    code = "RESOLUTION_ERROR"
    default_message = "Unable to load nearby facilities."


class Unauthenticated(EmergencyError):
    code = "UNAUTHENTICATED"
    default_message = "You must be logged in to use SOS"


class PersistenceError(EmergencyError):
    code = "PERSISTENCE_ERROR"
    default_message = "Failed to save emergency alert."


class SessionClosed(EmergencyError):
    code = "SESSION_CLOSED"
    default_message = "Emergency session was closed."


_STATUS_CODES: dict[type[EmergencyError], int] = {
    Unauthenticated: 401,
    PermissionDenied: 403,
    LocationTimeout: 504,
    PositionUnavailable: 503,
    LocationUnavailable: 503,
    RouteUnavailable: 503,
    ResolutionError: 503,
    PersistenceError: 502,
    SessionClosed: 409,
}


def to_api_error(exc: EmergencyError) -> ApiError:
    for error_type in type(exc).__mro__:
        status_code = _STATUS_CODES.get(error_type)  # type: ignore[arg-type]
        if status_code is not None:
            return ApiError(exc.code, exc.message, status_code)
    return ApiError(exc.code, exc.message, 500)
