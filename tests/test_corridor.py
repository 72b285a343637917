import asyncio
import warnings

import pytest
from shapely.geometry import LineString, Point

from app.errors import GeocodeNoResults
from geo.corridor import CorridorBuilder, Waypoint, buffer_route, clamp_corridor_miles
from geo.geocode import GeocodeResult
from geo.routing import RouteResult


DENVER = (39.74, -104.99)
CHEYENNE = (41.14, -104.82)


class FakeGeocoder:
    def __init__(self, places: dict[str, tuple[float, float]]) -> None:
        self.places = places
        self.queries: list[str] = []

    async def geocode(self, text: str) -> GeocodeResult:
        self.queries.append(text)
        if text not in self.places:
            raise GeocodeNoResults(f"no results for {text!r}")
        lat, lng = self.places[text]
        return GeocodeResult(address=text, lat=lat, lng=lng)


class FakeRouter:
    async def fetch_route(self, o_lat, o_lng, d_lat, d_lng) -> RouteResult:
        return RouteResult(
            geometry={"type": "LineString", "coordinates": [[o_lng, o_lat], [d_lng, d_lat]]},
            distance_meters=160_000.0,
            duration_seconds=6_000.0,
        )


@pytest.mark.parametrize(
    ("miles", "expected"),
    [(None, 10.0), (0, 1.0), (0.5, 1.0), (10, 10.0), (25.5, 25.5), (50, 50.0), (500, 50.0)],
)
def test_clamp_corridor_miles(miles, expected) -> None:
    assert clamp_corridor_miles(miles) == expected


def test_buffer_width_is_in_miles() -> None:
    route = LineString([(-105.0, 40.0), (-104.0, 40.0)])
    polygon, _ = buffer_route(route, 10)
    # 0.130 deg of latitude is about 8.97 miles, 0.160 deg about 11.04 miles
    assert polygon.contains(Point(-104.5, 40.130))
    assert not polygon.contains(Point(-104.5, 40.160))


def test_projection_round_trip_without_warnings() -> None:
    route = LineString([(-104.99, 39.74), (-104.82, 41.14)])
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        _, projection = buffer_route(route, 10)
        local = projection.to_local(route)
        back = projection.to_wgs84(local)
    # 1.4 deg of latitude is roughly 155 km
    assert 150_000 < local.length < 160_000
    assert back.equals_exact(route, 1e-6)


def test_buffer_is_clamped() -> None:
    route = LineString([(-105.0, 40.0), (-104.0, 40.0)])
    narrow, _ = buffer_route(route, 0.01)
    # 1 mile is about 0.0145 deg of latitude
    assert narrow.contains(Point(-104.5, 40.012))
    assert not narrow.contains(Point(-104.5, 40.02))


def test_build_denver_to_cheyenne() -> None:
    geocoder = FakeGeocoder({"Denver, CO": DENVER, "Cheyenne, WY": CHEYENNE})
    builder = CorridorBuilder(geocoder, FakeRouter())

    corridor = asyncio.run(
        builder.build(Waypoint("Denver, CO"), Waypoint("Cheyenne, WY"), 500)
    )
    assert corridor.corridor_miles == 50.0
    assert (corridor.origin.lat, corridor.origin.lng) == DENVER
    assert (corridor.destination.lat, corridor.destination.lng) == CHEYENNE
    assert corridor.polygon.contains(Point(-104.9, 40.5))
    view = corridor.route_view()
    assert view["distanceMeters"] == 160_000.0
    assert view["geometry"]["type"] == "LineString"
    assert view["corridorGeometry"]["type"] == "Polygon"


def test_build_uses_given_coordinates_without_geocoding() -> None:
    geocoder = FakeGeocoder({})
    builder = CorridorBuilder(geocoder, FakeRouter())
    corridor = asyncio.run(
        builder.build(
            Waypoint("Start", *DENVER),
            Waypoint("End", *CHEYENNE),
        )
    )
    assert geocoder.queries == []
    assert corridor.corridor_miles == 10.0
    assert corridor.origin.address == "Start"


def test_build_propagates_geocode_failure() -> None:
    builder = CorridorBuilder(FakeGeocoder({"Denver, CO": DENVER}), FakeRouter())
    with pytest.raises(GeocodeNoResults):
        asyncio.run(builder.build(Waypoint("Denver, CO"), Waypoint("Atlantis")))
