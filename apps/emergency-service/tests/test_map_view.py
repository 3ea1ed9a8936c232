import pytest
from geo_engine.models import Coordinate

from emergency_service.map_view import DEFAULT_ZOOM, MapPresenter
from emergency_service.routing import Route, RouteInstruction

ORIGIN = Coordinate(latitude=40.7128, longitude=-74.0060)
HOSPITAL = Coordinate(latitude=40.7392, longitude=-73.9754)
OTHER = Coordinate(latitude=40.7580, longitude=-73.9855)


def _route(destination: Coordinate) -> Route:
    return Route(
        waypoints=(ORIGIN, destination),
        geometry=(ORIGIN.point, destination.point),
        total_distance_meters=3200.0,
        total_duration_seconds=420.0,
        instructions=(RouteInstruction("Head north"),),
    )


def test_camera_follows_user_and_keeps_zoom() -> None:
    presenter = MapPresenter()
    presenter.update_user(ORIGIN)
    presenter.set_zoom(12)

    presenter.update_user(HOSPITAL)

    assert presenter.center == HOSPITAL.point
    assert presenter.zoom == 12
    assert presenter.snapshot()["user"] == {"lat": HOSPITAL.latitude, "lng": HOSPITAL.longitude}


def test_default_zoom_is_street_level() -> None:
    assert MapPresenter().zoom == DEFAULT_ZOOM == 15


def test_set_zoom_rejects_out_of_range_values() -> None:
    with pytest.raises(ValueError):
        MapPresenter().set_zoom(20)


def test_route_for_stale_destination_is_ignored() -> None:
    presenter = MapPresenter()
    presenter.set_destination(HOSPITAL.point)

    presenter.show_route(_route(OTHER))

    assert presenter.route is None


def test_changing_destination_drops_current_overlay() -> None:
    presenter = MapPresenter()
    presenter.set_destination(HOSPITAL.point)
    presenter.show_route(_route(HOSPITAL))
    assert presenter.route is not None

    presenter.set_destination(HOSPITAL.point)
    assert presenter.route is not None

    presenter.set_destination(OTHER.point)
    assert presenter.route is None


def test_render_draws_markers_and_route() -> None:
    presenter = MapPresenter()
    presenter.update_user(ORIGIN)
    presenter.set_destination(HOSPITAL.point, label="Bellevue Hospital")
    presenter.show_route(_route(HOSPITAL))

    html = presenter.render_html()

    assert "You are here" in html
    assert "Bellevue Hospital" in html
    assert "#dc2626" in html
    assert "sos-pulse" not in html


def test_sos_mode_uses_pulsing_destination() -> None:
    presenter = MapPresenter()
    presenter.update_user(ORIGIN)
    presenter.set_destination(HOSPITAL.point)
    presenter.set_sos_active(True)

    snapshot = presenter.snapshot()
    html = presenter.render_html()

    assert snapshot["destination_style"] == "pulse"
    assert snapshot["sos_active"] is True
    assert "sos-pulse" in html
    assert "@keyframes" in html


def test_snapshot_without_any_state() -> None:
    snapshot = MapPresenter().snapshot()

    assert snapshot["center"] is None
    assert snapshot["route"] is None
    assert snapshot["destination_style"] == "default"
