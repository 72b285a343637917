from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from shapely.errors import GEOSException
from shapely.geometry import shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import nearest_points

from geo.corridor import Corridor
from geo.severity import severity_bucket, severity_rank
from store.db import Database
from store.hazards import (
    COMMUNITY_REPORTS,
    PARKING_FACILITIES,
    ROAD_EVENTS,
    WEATHER_ALERTS,
    HazardTable,
    select_active_candidates,
)


logger = logging.getLogger(__name__)


def _json_or_none(text: str | None) -> object:
    return json.loads(text) if text else None


def _road_event_fields(row: dict) -> dict:
    return {
        "id": row["source_event_id"],
        "type": row["type"],
        "title": row["title"],
        "description": row["description"],
        "state": row["state"],
        "direction": row["direction"],
        "routeName": row["route_name"],
        "startedAt": row["started_at"],
        "expectedEndAt": row["expected_end_at"],
        "laneImpact": _json_or_none(row["lane_impact"]),
        "vehicleRestrictions": _json_or_none(row["vehicle_restrictions"]) or [],
    }


def _weather_alert_fields(row: dict) -> dict:
    return {
        "id": row["nws_id"],
        "type": row["event"],
        "title": row["headline"] or row["event"],
        "description": row["description"],
        "instruction": row["instruction"],
        "urgency": row["urgency"],
        "certainty": row["certainty"],
        "areaDescription": row["area_description"],
        "onset": row["onset"],
        "expires": row["expires"],
        "windSpeed": row["wind_speed"],
        "snowAmount": row["snow_amount"],
    }


def _community_report_fields(row: dict) -> dict:
    return {
        "id": row["report_id"],
        "type": row["type"],
        "title": row["title"],
        "description": row["description"],
        "locationDescription": row["location_description"],
        "routeName": row["route_name"],
        "state": row["state"],
        "upvotes": int(row["upvotes"]),
        "downvotes": int(row["downvotes"]),
        "expiresAt": row["expires_at"],
    }


@dataclass(frozen=True)
class Dataset:
    kind: str
    table: HazardTable
    limit: int
    fields: Callable[[dict], dict]


DATASETS: tuple[Dataset, ...] = (
    Dataset("road_event", ROAD_EVENTS, 200, _road_event_fields),
    Dataset("weather_alert", WEATHER_ALERTS, 200, _weather_alert_fields),
    Dataset("community_report", COMMUNITY_REPORTS, 100, _community_report_fields),
)


def _utc_now_iso(now: datetime | None) -> str:
    now = now or datetime.now(tz=UTC)
    return now.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def position_on_route(corridor: Corridor, geom: BaseGeometry) -> tuple[float, float]:
    """Return `(positionAlongRoute, distanceFromRoute)` for a geometry.

    Position is the normalized projection of the geometry's point nearest
    the route; distance is in metres and 0 when the geometry touches it.
    """
    local = corridor.projection.to_local(geom)
    route = corridor.route_local
    _, on_route = nearest_points(local, route)
    if route.length > 0:
        position = route.project(on_route, normalized=True)
    else:
        position = 0.0
    return min(1.0, max(0.0, float(position))), float(local.distance(route))


def _candidates(
    db: Database, corridor: Corridor, table: HazardTable, limit: int, now_iso: str
) -> list[tuple[dict, BaseGeometry]]:
    out = []
    rows = select_active_candidates(
        db, table, bbox=corridor.polygon.bounds, now_iso=now_iso
    )
    for row in rows:
        if len(out) >= limit:
            break
        try:
            geom = shape(json.loads(row["geom_geojson"]))
        except (GEOSException, ValueError, TypeError, KeyError) as e:
            logger.debug("unreadable geometry in %s %s: %s", table.name, row["id"], e)
            continue
        if corridor.polygon.intersects(geom):
            out.append((row, geom))
    return out


def match(db: Database, corridor: Corridor, *, now: datetime | None = None) -> dict:
    """Hazards intersecting the corridor, most severe first then by position."""
    now_iso = _utc_now_iso(now)
    hazards: list[dict] = []

    for dataset in DATASETS:
        for row, geom in _candidates(db, corridor, dataset.table, dataset.limit, now_iso):
            position, distance = position_on_route(corridor, geom)
            hazard = {
                "kind": dataset.kind,
                "source": row["source"],
                "severity": row["severity"],
                "severityRank": severity_rank(row["severity"]),
                "geometry": json.loads(row["geom_geojson"]),
                "positionAlongRoute": round(position, 6),
                "distanceFromRoute": round(distance, 1),
            }
            hazard.update(dataset.fields(row))
            hazards.append(hazard)

    hazards.sort(key=lambda h: (-h["severityRank"], h["positionAlongRoute"]))
    return {"hazards": hazards, "summary": summarize(hazards)}


def summarize(hazards: list[dict]) -> dict:
    by_severity = {"critical": 0, "warning": 0, "advisory": 0, "info": 0}
    by_kind = {d.kind: 0 for d in DATASETS}
    for h in hazards:
        by_severity[severity_bucket(h["severity"])] += 1
        by_kind[h["kind"]] = by_kind.get(h["kind"], 0) + 1
    return {
        "totalHazards": len(hazards),
        "countsBySeverity": by_severity,
        "countsByKind": by_kind,
    }


def parking_along_route(
    db: Database, corridor: Corridor, *, limit: int = 100
) -> list[dict]:
    out = []
    for row, geom in _candidates(db, corridor, PARKING_FACILITIES, limit, _utc_now_iso(None)):
        position, distance = position_on_route(corridor, geom)
        out.append(
            {
                "id": row["source_facility_id"],
                "source": row["source"],
                "name": row["name"],
                "state": row["state"],
                "highway": row["highway"],
                "direction": row["direction"],
                "totalSpaces": row["total_spaces"],
                "availableSpaces": row["available_spaces"],
                "trend": row["trend"],
                "amenities": _json_or_none(row["amenities"]) or [],
                "lastUpdatedAt": row["last_updated_at"],
                "geometry": json.loads(row["geom_geojson"]),
                "positionAlongRoute": round(position, 6),
                "distanceFromRoute": round(distance, 1),
            }
        )
    out.sort(key=lambda p: p["positionAlongRoute"])
    return out
