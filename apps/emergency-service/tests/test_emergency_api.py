from __future__ import annotations

import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from types import SimpleNamespace

from devkit.config import ServiceSettings
from fastapi.testclient import TestClient
from geo_engine.models import Coordinate

from emergency_service.alerts import InMemoryAlertStore
from emergency_service.app import create_app
from emergency_service.facilities import Facility, FacilityCategory, InMemoryFacilityDirectory, NearbyFacilityResolver
from emergency_service.narration import EdgeTtsAnnouncer, Narrator
from emergency_service.routing import Route, RouteEngineAdapter, RouteInstruction
from emergency_service.session import EmergencySessionRegistry, build_session_factory

HEADERS = {"x-user-id": "user-1"}
HERE = {"lat": 40.7128, "lng": -74.0060}
HOSPITAL = {"lat": 40.7392, "lng": -73.9754}


class EchoRoutingClient:
    async def fetch_route(self, origin: Coordinate, destination: Coordinate) -> Route:
        return Route(
            waypoints=(origin, destination),
            geometry=(origin.point, destination.point),
            total_distance_meters=3500.0,
            total_duration_seconds=480.0,
            instructions=(RouteInstruction("Head north on Broadway"), RouteInstruction("You have arrived")),
        )


class SilentAnnouncer:
    def speak(self, text: str, language: str) -> None:
        pass

    def cancel_all(self) -> None:
        pass


class FakeCommunicate:
    def __init__(self, text: str, voice: str) -> None:
        self.text = text

    async def save(self, path: str) -> None:
        Path(path).write_bytes(self.text.encode())


def _silent_narrator(_user_id: str, _channel: str) -> Narrator:
    return Narrator(SilentAnnouncer(), step_delay_seconds=0)


def _settings(tmp_path, **overrides) -> ServiceSettings:
    values = {
        "SERVICE_NAME": "emergency-service-test",
        "DATABASE_URL": None,
        "FACILITY_DIRECTORY": "memory",
        "LOCATION_TIMEOUT_SECONDS": 0.05,
        "SOS_REBROADCAST_INTERVAL_SECONDS": 60.0,
        "NARRATION_STEP_DELAY_SECONDS": 0.0,
        "SPEECH_OUTPUT_DIR": str(tmp_path),
    }
    values.update(overrides)
    return ServiceSettings(**values)


def _with_echo_routing(app, narrator_factory=None) -> None:
    app.state.sessions = EmergencySessionRegistry(
        build_session_factory(
            store=app.state.alert_store,
            resolver=app.state.resolver,
            route_engine_factory=lambda narrator: RouteEngineAdapter(EchoRoutingClient(), narrator),
            narrator_factory=narrator_factory or _silent_narrator,
            location_timeout_seconds=2.0,
            rebroadcast_interval_seconds=60.0,
        )
    )


def test_health_endpoints(tmp_path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        health = client.get("/healthz")
        ready = client.get("/readyz")

    assert health.status_code == 200
    assert health.json()["data"]["status"] == "ok"
    assert ready.json()["data"]["status"] == "ready"


def test_hotlines_include_dial_links(tmp_path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.get("/v1/emergency/hotlines")

    items = response.json()["data"]["items"]
    assert response.status_code == 200
    assert {"name": "Emergency Services", "number": "911", "dial_url": "tel:911"} in items


def test_sos_requires_user_header(tmp_path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.post("/v1/emergency/sos/start")

    body = response.json()
    assert response.status_code == 401
    assert body["success"] is False
    assert body["error"] == {"code": "UNAUTHENTICATED", "message": "You must be logged in to use SOS"}


def test_nearby_facilities_sorted_within_radius(tmp_path) -> None:
    app = create_app(_settings(tmp_path))
    app.state.resolver = NearbyFacilityResolver(
        InMemoryFacilityDirectory(
            [
                Facility("far", "Far Clinic", FacilityCategory.CLINIC, "", "", 40.7850, -74.0060),
                Facility("mid", "Bellevue", FacilityCategory.HOSPITAL, "462 1st Ave", "212-562-4141", 40.7392, -73.9754),
                Facility("near", "Pharmacy", FacilityCategory.PHARMACY, "", "", 40.7150, -74.0060),
            ]
        )
    )

    with TestClient(app) as client:
        response = client.get("/v1/emergency/facilities", params={**HERE, "radius_km": 5})

    body = response.json()
    assert response.status_code == 200
    assert [item["id"] for item in body["data"]["items"]] == ["near", "mid"]
    assert body["data"]["items"][1]["dial_url"] == "tel:2125624141"
    assert body["data"]["items"][0]["dial_url"] is None
    assert body["meta"] == {"radius_km": 5.0, "error": None}


def test_nearby_facilities_rejects_oversized_radius(tmp_path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.get("/v1/emergency/facilities", params={**HERE, "radius_km": 500})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_stop_sos_when_idle_is_noop(tmp_path) -> None:
    app = create_app(_settings(tmp_path))
    with TestClient(app) as client:
        response = client.post("/v1/emergency/sos/stop", headers=HEADERS)

    data = response.json()["data"]
    assert response.status_code == 200
    assert data["alert"] is None
    assert data["status"] == {"state": "idle", "triggered": False, "alert_id": None}


def test_sos_start_without_location_fix_fails(tmp_path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.post("/v1/emergency/sos/start", headers=HEADERS)
        status = client.get("/v1/emergency/sos", headers=HEADERS)

    assert response.status_code == 503
    assert response.json()["error"] == {"code": "LOCATION_UNAVAILABLE", "message": "Location request timed out."}
    assert status.json()["data"]["status"]["state"] == "idle"
    assert status.json()["data"]["active_alert"] is None


def test_sos_start_after_permission_denied_fails_fast(tmp_path) -> None:
    settings = _settings(tmp_path, LOCATION_TIMEOUT_SECONDS=30.0)
    with TestClient(create_app(settings)) as client:
        reported = client.post("/v1/emergency/location/error", json={"code": "PERMISSION_DENIED"}, headers=HEADERS)
        response = client.post("/v1/emergency/sos/start", headers=HEADERS)

    assert reported.json()["data"]["code"] == "PERMISSION_DENIED"
    assert response.status_code == 503
    assert response.json()["error"]["message"] == "Location permission denied. Please enable location services."


def test_sos_start_and_stop_round_trip(tmp_path) -> None:
    app = create_app(_settings(tmp_path))
    _with_echo_routing(app)

    with TestClient(app) as client, ThreadPoolExecutor(max_workers=1) as pool:
        pending = pool.submit(client.post, "/v1/emergency/sos/start", headers=HEADERS)
        while not pending.done():
            client.post("/v1/emergency/location", json={**HERE, "accuracy_meters": 8}, headers=HEADERS)
            time.sleep(0.01)
        started = pending.result()
        active = client.get("/v1/emergency/sos", headers=HEADERS)
        map_state = client.get("/v1/emergency/map/state", headers=HEADERS)
        stopped = client.post("/v1/emergency/sos/stop", headers=HEADERS)
        after = client.get("/v1/emergency/sos", headers=HEADERS)

    assert started.status_code == 200
    alert = started.json()["data"]["alert"]
    assert alert["status"] == "active"
    assert (alert["latitude"], alert["longitude"]) == (HERE["lat"], HERE["lng"])
    assert started.json()["data"]["status"]["state"] == "active"
    assert active.json()["data"]["active_alert"]["id"] == alert["id"]
    assert map_state.json()["data"]["destination_style"] == "pulse"
    assert stopped.json()["data"]["alert"]["status"] == "resolved"
    assert after.json()["data"]["status"]["state"] == "idle"
    assert after.json()["data"]["active_alert"] is None


def test_route_endpoint_draws_and_clears_route(tmp_path) -> None:
    app = create_app(_settings(tmp_path))
    _with_echo_routing(app)

    with TestClient(app) as client:
        routed = client.post(
            "/v1/emergency/route",
            json={"destination": HOSPITAL, "origin": HERE},
            headers=HEADERS,
        )
        drawn = client.get("/v1/emergency/map/state", headers=HEADERS)
        page = client.get("/v1/emergency/map", headers=HEADERS)
        cleared = client.delete("/v1/emergency/route", headers=HEADERS)
        after = client.get("/v1/emergency/map/state", headers=HEADERS)

    assert routed.status_code == 200
    assert routed.json()["data"]["instructions"] == ["Head north on Broadway", "You have arrived"]
    assert routed.json()["data"]["waypoints"] == [[HERE["lat"], HERE["lng"]], [HOSPITAL["lat"], HOSPITAL["lng"]]]
    assert drawn.json()["data"]["route"]["total_distance_meters"] == 3500.0
    assert drawn.json()["data"]["center"] == HERE
    assert page.status_code == 200
    assert "#dc2626" in page.text
    assert cleared.json()["data"] == {"cleared": True}
    assert after.json()["data"]["route"] is None
    assert after.json()["data"]["destination"] is None


def test_alert_store_defaults_to_memory_without_database(tmp_path) -> None:
    app = create_app(_settings(tmp_path))

    assert isinstance(app.state.alert_store, InMemoryAlertStore)


def test_speech_clips_are_served_and_deleted_with_route(tmp_path, monkeypatch) -> None:
    monkeypatch.setitem(sys.modules, "edge_tts", SimpleNamespace(Communicate=FakeCommunicate))
    app = create_app(_settings(tmp_path))
    _with_echo_routing(
        app,
        narrator_factory=lambda user_id, channel: Narrator(
            EdgeTtsAnnouncer(tmp_path / user_id, prefix=channel),
            step_delay_seconds=0,
        ),
    )

    with TestClient(app) as client:
        client.post("/v1/emergency/route", json={"destination": HOSPITAL, "origin": HERE}, headers=HEADERS)
        listed = client.get("/v1/emergency/speech", headers=HEADERS)
        for _ in range(100):
            if len(listed.json()["data"]["items"]) == 2:
                break
            time.sleep(0.01)
            listed = client.get("/v1/emergency/speech", headers=HEADERS)
        audio = client.get("/v1/emergency/speech/route-000001.mp3", headers=HEADERS)
        other_user = client.get("/v1/emergency/speech/route-000001.mp3", headers={"x-user-id": "user-2"})
        unknown = client.get("/v1/emergency/speech/passwd", headers=HEADERS)
        client.delete("/v1/emergency/route", headers=HEADERS)
        after = client.get("/v1/emergency/speech", headers=HEADERS)
        gone = client.get("/v1/emergency/speech/route-000001.mp3", headers=HEADERS)

    assert listed.json()["data"]["items"] == [
        {"name": "route-000001.mp3", "text": "Head north on Broadway", "url": "/v1/emergency/speech/route-000001.mp3"},
        {"name": "route-000002.mp3", "text": "You have arrived", "url": "/v1/emergency/speech/route-000002.mp3"},
    ]
    assert audio.status_code == 200
    assert audio.headers["content-type"] == "audio/mpeg"
    assert audio.content == b"Head north on Broadway"
    assert other_user.status_code == 404
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "SPEECH_CLIP_NOT_FOUND"
    assert after.json()["data"]["items"] == []
    assert gone.status_code == 404
    assert list((tmp_path / "user-1").glob("*.mp3")) == []
