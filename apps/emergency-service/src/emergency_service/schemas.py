from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from emergency_service.alerts import EmergencyAlert
from emergency_service.facilities import Facility, FacilityCategory, open_in_maps_url
from emergency_service.hotlines import Hotline, tel_url
from emergency_service.narration import SpeechClip
from emergency_service.routing import Route
from emergency_service.sos import SosSessionManager


class PointIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class LocationReport(PointIn):
    accuracy_meters: float = Field(default=0.0, ge=0)


class LocationErrorReport(BaseModel):
    code: str = Field(..., pattern="^(PERMISSION_DENIED|POSITION_UNAVAILABLE|TIMEOUT)$")
    message: str | None = None


class RouteRequest(BaseModel):
    destination: PointIn
    origin: LocationReport | None = None


class FacilityItem(BaseModel):
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
    maps_url: str
    dial_url: str | None = None

    @classmethod
    def from_entity(cls, facility: Facility) -> "FacilityItem":
        return cls(
            id=facility.id,
            name=facility.name,
            category=facility.category,
            address=facility.address,
            phone=facility.phone,
            lat=facility.lat,
            lng=facility.lng,
            distance_km=facility.distance_km,
            rating=facility.rating,
            hours=facility.hours,
            maps_url=open_in_maps_url(facility.lat, facility.lng),
            dial_url=tel_url(facility.phone) if any(ch.isdigit() for ch in facility.phone) else None,
        )


class RouteResult(BaseModel):
    waypoints: list[list[float]]
    geometry: list[list[float]]
    total_distance_meters: float
    total_duration_seconds: float
    instructions: list[str]

    @classmethod
    def from_entity(cls, route: Route) -> "RouteResult":
        return cls(
            waypoints=[[item.latitude, item.longitude] for item in route.waypoints],
            geometry=[[item.lat, item.lng] for item in route.geometry],
            total_distance_meters=route.total_distance_meters,
            total_duration_seconds=route.total_duration_seconds,
            instructions=[item.text for item in route.instructions],
        )


class AlertItem(BaseModel):
    id: str
    user_id: str
    latitude: float
    longitude: float
    status: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, alert: EmergencyAlert) -> "AlertItem":
        return cls(
            id=alert.id,
            user_id=alert.user_id,
            latitude=alert.latitude,
            longitude=alert.longitude,
            status=alert.status.value,
            created_at=alert.created_at,
            updated_at=alert.updated_at,
        )


class SosStatus(BaseModel):
    state: str
    triggered: bool
    alert_id: str | None = None

    @classmethod
    def from_manager(cls, manager: SosSessionManager) -> "SosStatus":
        session = manager.session
        return cls(
            state=manager.state.value,
            triggered=bool(session and session.triggered),
            alert_id=session.alert_id if session else None,
        )


class HotlineItem(BaseModel):
    name: str
    number: str
    dial_url: str

    @classmethod
    def from_entity(cls, hotline: Hotline) -> "HotlineItem":
        return cls(name=hotline.name, number=hotline.number, dial_url=hotline.dial_url)


class SpeechClipItem(BaseModel):
    name: str
    text: str
    url: str

    @classmethod
    def from_entity(cls, clip: SpeechClip) -> "SpeechClipItem":
        return cls(name=clip.name, text=clip.text, url=f"/v1/emergency/speech/{clip.name}")
