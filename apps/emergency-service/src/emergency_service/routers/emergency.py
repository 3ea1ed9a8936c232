from __future__ import annotations

from devkit.config import ServiceSettings
from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse, HTMLResponse
from geo_engine.models import Coordinate, GeoPoint

from emergency_service.alerts import AlertStore
from emergency_service.dependencies import get_alert_store, get_registry, get_resolver, get_settings, get_user_id
from emergency_service.errors import ApiError
from emergency_service.facilities import FacilityCategory, NearbyFacilityResolver
from emergency_service.geolocation import device_error
from emergency_service.hotlines import EMERGENCY_HOTLINES
from emergency_service.response import success_response
from emergency_service.schemas import (
    AlertItem,
    FacilityItem,
    HotlineItem,
    LocationErrorReport,
    LocationReport,
    RouteRequest,
    RouteResult,
    SosStatus,
    SpeechClipItem,
)
from emergency_service.session import EmergencySession, EmergencySessionRegistry

router = APIRouter(prefix="/v1/emergency", tags=["emergency"])


def _status(session: EmergencySession | None) -> SosStatus:
    if session is None:
        return SosStatus(state="idle", triggered=False)
    return SosStatus.from_manager(session.sos)


@router.post("/location")
async def report_location(
    body: LocationReport,
    user_id: str = Depends(get_user_id),
    registry: EmergencySessionRegistry = Depends(get_registry),
) -> dict:
    session = registry.get_or_create(user_id)
    session.feed.report_fix(Coordinate(latitude=body.lat, longitude=body.lng, accuracy_meters=body.accuracy_meters))
    return success_response({"received": True, "sos_state": session.sos.state.value})


@router.post("/location/error")
async def report_location_error(
    body: LocationErrorReport,
    user_id: str = Depends(get_user_id),
    registry: EmergencySessionRegistry = Depends(get_registry),
) -> dict:
    error = device_error(body.code, body.message)
    registry.get_or_create(user_id).feed.report_error(error)
    return success_response({"received": True, "code": error.code, "message": error.message})


@router.get("/facilities")
async def nearby_facilities(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float | None = Query(default=None, ge=0, le=50),
    category: FacilityCategory | None = None,
    resolver: NearbyFacilityResolver = Depends(get_resolver),
    settings: ServiceSettings = Depends(get_settings),
) -> dict:
    radius = settings.DEFAULT_SEARCH_RADIUS_KM if radius_km is None else radius_km
    result = await resolver.resolve(GeoPoint(lat=lat, lng=lng), radius, category)
    items = [FacilityItem.from_entity(item).model_dump(mode="json") for item in result.facilities]
    return success_response({"items": items}, meta={"radius_km": radius, "error": result.error})


@router.post("/route")
async def compute_route(
    body: RouteRequest,
    user_id: str = Depends(get_user_id),
    registry: EmergencySessionRegistry = Depends(get_registry),
) -> dict:
    session = registry.get_or_create(user_id)
    origin = None
    if body.origin is not None:
        origin = Coordinate(
            latitude=body.origin.lat,
            longitude=body.origin.lng,
            accuracy_meters=body.origin.accuracy_meters,
        )
    destination = Coordinate(latitude=body.destination.lat, longitude=body.destination.lng)
    route = await session.route_to(destination, origin=origin)
    if route is None:
        return success_response(None, meta={"superseded": True})
    return success_response(RouteResult.from_entity(route).model_dump())


@router.delete("/route")
async def clear_route(
    user_id: str = Depends(get_user_id),
    registry: EmergencySessionRegistry = Depends(get_registry),
) -> dict:
    session = registry.get(user_id)
    if session is not None:
        session.clear_route()
    return success_response({"cleared": True})


@router.post("/sos/start")
async def start_sos(
    user_id: str = Depends(get_user_id),
    registry: EmergencySessionRegistry = Depends(get_registry),
) -> dict:
    session = registry.get_or_create(user_id)
    alert = await session.start_sos()
    return success_response(
        {
            "alert": AlertItem.from_entity(alert).model_dump(mode="json"),
            "status": SosStatus.from_manager(session.sos).model_dump(),
        }
    )


@router.post("/sos/stop")
async def stop_sos(
    user_id: str = Depends(get_user_id),
    registry: EmergencySessionRegistry = Depends(get_registry),
) -> dict:
    session = registry.get(user_id)
    alert = await session.stop_sos() if session is not None else None
    return success_response(
        {
            "alert": AlertItem.from_entity(alert).model_dump(mode="json") if alert else None,
            "status": _status(session).model_dump(),
        }
    )


@router.get("/sos")
async def sos_status(
    user_id: str = Depends(get_user_id),
    registry: EmergencySessionRegistry = Depends(get_registry),
    store: AlertStore = Depends(get_alert_store),
) -> dict:
    session = registry.get(user_id)
    status = _status(session)
    active = await store.get_active(user_id)
    return success_response(
        {
            "status": status.model_dump(),
            "active_alert": AlertItem.from_entity(active).model_dump(mode="json") if active else None,
        }
    )


@router.get("/map", response_class=HTMLResponse)
async def map_html(
    user_id: str = Depends(get_user_id),
    registry: EmergencySessionRegistry = Depends(get_registry),
) -> str:
    return registry.get_or_create(user_id).map_view.render_html()


@router.get("/map/state")
async def map_state(
    user_id: str = Depends(get_user_id),
    registry: EmergencySessionRegistry = Depends(get_registry),
) -> dict:
    return success_response(registry.get_or_create(user_id).map_view.snapshot())


@router.get("/hotlines")
async def hotlines() -> dict:
    return success_response({"items": [HotlineItem.from_entity(item).model_dump() for item in EMERGENCY_HOTLINES]})


@router.get("/speech")
async def speech_clips(
    user_id: str = Depends(get_user_id),
    registry: EmergencySessionRegistry = Depends(get_registry),
) -> dict:
    session = registry.get(user_id)
    clips = session.speech_clips() if session is not None else []
    return success_response({"items": [SpeechClipItem.from_entity(clip).model_dump() for clip in clips]})


@router.get("/speech/{clip_name}", response_class=FileResponse)
async def speech_clip(
    clip_name: str,
    user_id: str = Depends(get_user_id),
    registry: EmergencySessionRegistry = Depends(get_registry),
) -> FileResponse:
    session = registry.get(user_id)
    clip = session.speech_clip(clip_name) if session is not None else None
    if clip is None or not clip.path.is_file():
        raise ApiError("SPEECH_CLIP_NOT_FOUND", "Speech clip not found.", 404)
    return FileResponse(clip.path, media_type="audio/mpeg", filename=clip.name)
