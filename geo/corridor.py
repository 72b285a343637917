from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pyproj import Transformer
from shapely import prepare, transform
from shapely.geometry import LineString, mapping, shape
from shapely.geometry.base import BaseGeometry

from geo.geocode import Geocoder
from geo.routing import RouteProvider


logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.344
MIN_CORRIDOR_MILES = 1.0
MAX_CORRIDOR_MILES = 50.0
DEFAULT_CORRIDOR_MILES = 10.0


def clamp_corridor_miles(miles: float | None) -> float:
    if miles is None:
        return DEFAULT_CORRIDOR_MILES
    return min(MAX_CORRIDOR_MILES, max(MIN_CORRIDOR_MILES, float(miles)))


class LocalProjection:
    """Azimuthal equidistant projection centred on a point, in metres."""

    def __init__(self, lon: float, lat: float) -> None:
        crs = f"+proj=aeqd +lat_0={lat} +lon_0={lon} +datum=WGS84 +units=m +no_defs"
        self._forward = Transformer.from_crs("EPSG:4326", crs, always_xy=True)
        self._inverse = Transformer.from_crs(crs, "EPSG:4326", always_xy=True)

    def to_local(self, geom: BaseGeometry) -> BaseGeometry:
        return transform(geom, self._forward.transform, interleaved=False)

    def to_wgs84(self, geom: BaseGeometry) -> BaseGeometry:
        return transform(geom, self._inverse.transform, interleaved=False)


def buffer_route(
    route: LineString, miles: float
) -> tuple[BaseGeometry, LocalProjection]:
    """Buffer `route` by `miles` (clamped) and return it with its projection."""
    centre = route.centroid
    projection = LocalProjection(centre.x, centre.y)
    local = projection.to_local(route)
    buffered = local.buffer(clamp_corridor_miles(miles) * METERS_PER_MILE)
    return projection.to_wgs84(buffered), projection


@dataclass(frozen=True)
class Waypoint:
    address: str
    lat: float | None = None
    lng: float | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


@dataclass(frozen=True)
class ResolvedWaypoint:
    address: str
    lat: float
    lng: float


@dataclass(frozen=True)
class Corridor:
    origin: ResolvedWaypoint
    destination: ResolvedWaypoint
    route: LineString
    polygon: BaseGeometry
    corridor_miles: float
    distance_meters: float
    duration_seconds: float
    projection: LocalProjection = field(repr=False)
    route_local: BaseGeometry = field(repr=False)

    def route_view(self) -> dict:
        return {
            "originAddress": self.origin.address,
            "originLat": self.origin.lat,
            "originLng": self.origin.lng,
            "destinationAddress": self.destination.address,
            "destinationLat": self.destination.lat,
            "destinationLng": self.destination.lng,
            "distanceMeters": self.distance_meters,
            "durationSeconds": self.duration_seconds,
            "corridorMiles": self.corridor_miles,
            "geometry": mapping(self.route),
            "corridorGeometry": mapping(self.polygon),
        }


class CorridorBuilder:
    def __init__(self, geocoder: Geocoder, router: RouteProvider) -> None:
        self._geocoder = geocoder
        self._router = router

    async def _resolve(self, waypoint: Waypoint) -> ResolvedWaypoint:
        if waypoint.has_coordinates:
            return ResolvedWaypoint(
                address=waypoint.address,
                lat=float(waypoint.lat),  # type: ignore[arg-type]
                lng=float(waypoint.lng),  # type: ignore[arg-type]
            )
        found = await self._geocoder.geocode(waypoint.address)
        return ResolvedWaypoint(
            address=waypoint.address or found.address, lat=found.lat, lng=found.lng
        )

    async def build(
        self,
        origin: Waypoint,
        destination: Waypoint,
        corridor_miles: float | None = DEFAULT_CORRIDOR_MILES,
    ) -> Corridor:
        o = await self._resolve(origin)
        d = await self._resolve(destination)
        route = await self._router.fetch_route(o.lat, o.lng, d.lat, d.lng)

        line = shape(route.geometry)
        if not isinstance(line, LineString):
            raise ValueError(f"expected a LineString route, got {line.geom_type}")

        miles = clamp_corridor_miles(corridor_miles)
        polygon, projection = buffer_route(line, miles)
        prepare(polygon)
        logger.debug(
            "corridor %s -> %s: %.0f m route, %.0f mi buffer",
            o.address,
            d.address,
            route.distance_meters,
            miles,
        )
        return Corridor(
            origin=o,
            destination=d,
            route=line,
            polygon=polygon,
            corridor_miles=miles,
            distance_meters=route.distance_meters,
            duration_seconds=route.duration_seconds,
            projection=projection,
            route_local=projection.to_local(line),
        )
