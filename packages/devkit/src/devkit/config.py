from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

from devkit.timezone import configure_utc_timezone


class ServiceSettings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    SERVICE_NAME: str = "service"
    LOG_LEVEL: str = "INFO"
    DATABASE_URL: str | None = None

    ROUTING_SERVICE_URL: str = "https://router.project-osrm.org/route/v1"
    ROUTING_PROFILE: str = "driving"
    FACILITY_DIRECTORY: str = "overpass"
    FACILITY_DIRECTORY_URL: str = "https://overpass-api.de/api/interpreter"
    HTTP_TIMEOUT_SECONDS: float = 10.0

    LOCATION_TIMEOUT_SECONDS: float = 10.0
    SOS_REBROADCAST_INTERVAL_SECONDS: float = 5.0
    NARRATION_STEP_DELAY_SECONDS: float = 3.5
    SPEECH_LANGUAGE: str = "en-US"
    SPEECH_OUTPUT_DIR: str = "data/speech"
    SPEECH_MAX_CLIPS: int = 20
    DEFAULT_SEARCH_RADIUS_KM: float = 5.0


def load_settings(service_name: str) -> ServiceSettings:
    configure_utc_timezone()
    return ServiceSettings(SERVICE_NAME=service_name)
