from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from devkit.config import ServiceSettings, load_settings
from devkit.observability import configure_logging, configure_otel, configure_probe_access_log_filter
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from emergency_service.dependencies import build_alert_store, build_facility_directory, build_registry
from emergency_service.errors import ApiError, EmergencyError, to_api_error
from emergency_service.facilities import NearbyFacilityResolver
from emergency_service.response import error_response, success_response
from emergency_service.routers.emergency import router as emergency_router

logger = logging.getLogger(__name__)


def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    settings = settings or load_settings("emergency-service")
    configure_logging(settings.LOG_LEVEL)
    configure_otel(service_name=settings.SERVICE_NAME)
    configure_probe_access_log_filter()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.sessions.close_all()
        logger.info("emergency_sessions_closed")

    app = FastAPI(title="Emergency SOS Service", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.alert_store = build_alert_store(settings)
    app.state.resolver = NearbyFacilityResolver(build_facility_directory(settings))
    app.state.sessions = build_registry(settings, app.state.alert_store, app.state.resolver)
    app.include_router(emergency_router)

    @app.get("/healthz")
    async def healthz() -> dict:
        return success_response({"status": "ok"}, meta={})

    @app.get("/readyz")
    async def readyz() -> dict:
        return success_response({"status": "ready"}, meta={})

    @app.exception_handler(ApiError)
    async def handle_api_error(_: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=error_response(exc.code, exc.message))

    @app.exception_handler(EmergencyError)
    async def handle_emergency_error(_: Request, exc: EmergencyError) -> JSONResponse:
        api_error = to_api_error(exc)
        return JSONResponse(status_code=api_error.status_code, content=error_response(api_error.code, api_error.message))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        message = "; ".join(err["msg"] for err in exc.errors())
        return JSONResponse(status_code=422, content=error_response("VALIDATION_ERROR", message))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_error", extra={"path": request.url.path})
        return JSONResponse(
            status_code=500,
            content=error_response("INTERNAL_ERROR", "Something went wrong. Please return to the home screen and try again."),
        )

    return app


app = create_app()
