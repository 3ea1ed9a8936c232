from __future__ import annotations

from pathlib import Path

from devkit.config import ServiceSettings
from devkit.db import AsyncDatabaseManager
from fastapi import Header, Request

from emergency_service.alerts import AlertStore, InMemoryAlertStore, SqlAlchemyAlertStore
from emergency_service.circuit_breaker import CircuitBreaker
from emergency_service.errors import Unauthenticated
from emergency_service.facilities import (
    FacilityDirectory,
    InMemoryFacilityDirectory,
    NearbyFacilityResolver,
    OverpassFacilityDirectory,
)
from emergency_service.narration import EdgeTtsAnnouncer, Narrator
from emergency_service.routing import OsrmRoutingClient, RouteEngineAdapter
from emergency_service.session import EmergencySessionRegistry, build_session_factory


def build_alert_store(settings: ServiceSettings) -> AlertStore:
    if settings.DATABASE_URL:
        return SqlAlchemyAlertStore(AsyncDatabaseManager(settings.DATABASE_URL))
    return InMemoryAlertStore()


def build_facility_directory(settings: ServiceSettings) -> FacilityDirectory:
    if settings.FACILITY_DIRECTORY == "memory":
        return InMemoryFacilityDirectory()
    if settings.FACILITY_DIRECTORY != "overpass":
        raise ValueError(f"unsupported facility directory '{settings.FACILITY_DIRECTORY}', supported: memory, overpass")
    return OverpassFacilityDirectory(
        base_url=settings.FACILITY_DIRECTORY_URL,
        timeout_seconds=settings.HTTP_TIMEOUT_SECONDS,
    )


def build_registry(
    settings: ServiceSettings,
    store: AlertStore,
    resolver: NearbyFacilityResolver,
) -> EmergencySessionRegistry:
    routing_client = OsrmRoutingClient(
        base_url=settings.ROUTING_SERVICE_URL,
        profile=settings.ROUTING_PROFILE,
        timeout_seconds=settings.HTTP_TIMEOUT_SECONDS,
    )
    # One breaker for the whole process: the routing service is shared by every session.
    breaker = CircuitBreaker("routing", failure_threshold=3, recovery_timeout_seconds=30.0)

    def _narrator(user_id: str, channel: str) -> Narrator:
        return Narrator(
            EdgeTtsAnnouncer(
                Path(settings.SPEECH_OUTPUT_DIR) / user_id,
                prefix=channel,
                max_clips=settings.SPEECH_MAX_CLIPS,
            ),
            step_delay_seconds=settings.NARRATION_STEP_DELAY_SECONDS,
            language=settings.SPEECH_LANGUAGE,
        )

    return EmergencySessionRegistry(
        build_session_factory(
            store=store,
            resolver=resolver,
            route_engine_factory=lambda narrator: RouteEngineAdapter(routing_client, narrator, breaker),
            narrator_factory=_narrator,
            location_timeout_seconds=settings.LOCATION_TIMEOUT_SECONDS,
            rebroadcast_interval_seconds=settings.SOS_REBROADCAST_INTERVAL_SECONDS,
        )
    )


def get_settings(request: Request) -> ServiceSettings:
    return request.app.state.settings


def get_registry(request: Request) -> EmergencySessionRegistry:
    return request.app.state.sessions


def get_resolver(request: Request) -> NearbyFacilityResolver:
    return request.app.state.resolver


def get_alert_store(request: Request) -> AlertStore:
    return request.app.state.alert_store


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise Unauthenticated()
    return x_user_id.strip()
