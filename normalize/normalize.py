from __future__ import annotations

import json
import re
from collections.abc import Mapping
from datetime import UTC, datetime
from types import MappingProxyType

from shapely.errors import GEOSException
from shapely.geometry import shape


ROAD_RELEVANT_ALERT_TYPES = frozenset(
    {
        "Winter Storm Warning",
        "Winter Storm Watch",
        "Blizzard Warning",
        "Ice Storm Warning",
        "Wind Advisory",
        "High Wind Warning",
        "Flood Warning",
        "Flash Flood Warning",
        "Tornado Warning",
        "Dense Fog Advisory",
        "Freezing Fog Advisory",
        "Extreme Cold Warning",
        "Wind Chill Warning",
        "Wind Chill Advisory",
        "Dust Storm Warning",
        "Tropical Storm Warning",
        "Hurricane Warning",
        "Winter Weather Advisory",
        "Freezing Rain Advisory",
        "Heavy Snow Warning",
    }
)

NWS_SEVERITIES = frozenset({"Extreme", "Severe", "Moderate", "Minor", "Unknown"})

VEHICLE_IMPACT_SEVERITY: Mapping[str, str] = MappingProxyType(
    {
        "all-lanes-closed": "CRITICAL",
        "some-lanes-closed": "WARNING",
        "alternating-one-way": "WARNING",
        "merge-left": "WARNING",
        "merge-right": "WARNING",
        "shifting-left": "ADVISORY",
        "shifting-right": "ADVISORY",
        "reduced-speed-zone": "ADVISORY",
    }
)

WZDX_EVENT_TYPES: Mapping[str, str] = MappingProxyType(
    {
        "work-zone": "CONSTRUCTION",
        "restriction": "RESTRICTION",
        "incident": "INCIDENT",
        "event": "SPECIAL_EVENT",
    }
)

_WIND_SPEED_RE = re.compile(r"(\d+(?:\s*to\s*\d+)?)\s*mph", re.IGNORECASE)
_SNOW_AMOUNT_RE = re.compile(
    r"(\d+(?:\.\d+)?(?:\s*to\s*\d+(?:\.\d+)?)?)\s*inch(?:es)?", re.IGNORECASE
)


def _to_iso(value: object) -> str | None:
    """Parse an upstream timestamp into a UTC `...Z` string, or None."""
    if value is None or value == "":
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _str_or_none(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def geometry_bbox(geom: dict) -> tuple[float, float, float, float]:
    """Bounds of a GeoJSON geometry; ValueError if it is unusable."""
    try:
        g = shape(geom)
    except (GEOSException, AttributeError, IndexError, KeyError, TypeError) as e:
        raise ValueError(f"invalid geometry: {e}") from e
    if g.is_empty:
        raise ValueError("empty geometry")
    min_lon, min_lat, max_lon, max_lat = g.bounds
    return (float(min_lon), float(min_lat), float(max_lon), float(max_lat))


def _with_geometry(row: dict, geom: dict | None) -> dict:
    if geom is None:
        row.update(
            geom_geojson=None, min_lon=None, min_lat=None, max_lon=None, max_lat=None
        )
        return row
    min_lon, min_lat, max_lon, max_lat = geometry_bbox(geom)
    row.update(
        geom_geojson=json.dumps(geom, ensure_ascii=False),
        min_lon=min_lon,
        min_lat=min_lat,
        max_lon=max_lon,
        max_lat=max_lat,
    )
    return row


def extract_wind_speed(text: str | None) -> str | None:
    if not text:
        return None
    match = _WIND_SPEED_RE.search(text)
    return f"{match.group(1)} mph" if match else None


def extract_snow_amount(text: str | None) -> str | None:
    if not text:
        return None
    match = _SNOW_AMOUNT_RE.search(text)
    return f"{match.group(1)} inches" if match else None


def zone_id_from_ref(ref: str) -> str:
    """`https://api.weather.gov/zones/forecast/COZ039` -> `COZ039`."""
    return ref.rstrip("/").rsplit("/", 1)[-1]


def is_road_relevant_alert(feature: dict) -> bool:
    properties = feature.get("properties") or {}
    return (
        properties.get("status") == "Actual"
        and properties.get("event") in ROAD_RELEVANT_ALERT_TYPES
    )


def normalize_nws_alert(*, record: dict, geometry: dict | None) -> dict:
    """Map one NWS alert feature to a `weather_alerts` row.

    `geometry` is the alert's own geometry or the merged zone geometry; the
    caller decides which.
    """
    properties = record["properties"]
    nws_id = str(properties.get("id") or record["id"])
    description = _str_or_none(properties.get("description"))
    severity = str(properties.get("severity") or "Unknown")
    if severity not in NWS_SEVERITIES:
        severity = "Unknown"

    zones = [
        zone_id_from_ref(str(z)) for z in (properties.get("affectedZones") or [])
    ]

    row = {
        "nws_id": nws_id,
        "event": str(properties["event"]),
        "severity": severity,
        "urgency": _str_or_none(properties.get("urgency")),
        "certainty": _str_or_none(properties.get("certainty")),
        "headline": _str_or_none(properties.get("headline")),
        "description": description,
        "instruction": _str_or_none(properties.get("instruction")),
        "area_description": _str_or_none(properties.get("areaDesc")),
        "affected_zones": json.dumps(zones),
        "onset": _to_iso(properties.get("onset")),
        "expires": _to_iso(properties.get("expires")),
        "sender_name": _str_or_none(properties.get("senderName")),
        "wind_speed": extract_wind_speed(description),
        "snow_amount": extract_snow_amount(description),
        "raw": json.dumps(record, ensure_ascii=False),
    }
    return _with_geometry(row, geometry)


def _vehicle_restrictions(raw: object) -> str:
    out = []
    for r in raw or []:
        if not isinstance(r, dict) or "type" not in r:
            continue
        out.append({"type": r["type"], "value": r.get("value"), "unit": r.get("unit")})
    return json.dumps(out)


def _lane_impact(vehicle_impact: str | None, workers_present: object) -> str | None:
    if vehicle_impact is None:
        return None
    return json.dumps(
        {"vehicle_impact": vehicle_impact, "workers_present": workers_present}
    )


def normalize_wzdx_feature(
    *,
    state: str,
    feed_url: str,
    record: dict,
    version: str | None,
) -> dict | None:
    """Map a WZDx feature to a `road_events` row; None when it has no geometry.

    v3 and later nest event details under `core_details`. Some feeds declare
    v3+ but still publish flat v2 properties, so a missing `core_details`
    falls back to the v2 layout.
    """
    geometry = record.get("geometry")
    if not geometry:
        return None

    properties = record.get("properties") or {}
    major = 3
    if version:
        try:
            major = int(str(version).split(".")[0])
        except ValueError:
            major = 3

    core = properties.get("core_details") if major >= 3 else None
    if isinstance(core, dict):
        road_names = core.get("road_names") or []
        road_name = _str_or_none(road_names[0] if road_names else core.get("name"))
        event_type = core.get("event_type")
        description = _str_or_none(core.get("description"))
        direction = _str_or_none(core.get("direction"))
        if record.get("id") is not None:
            source_event_id = str(record["id"])
        else:
            source_event_id = ":".join(
                [
                    str(core.get("data_source_id") or ""),
                    road_name or "",
                    str(properties.get("start_date") or ""),
                ]
            )
    else:
        road_name = _str_or_none(properties.get("road_name"))
        event_type = properties.get("event_type")
        description = _str_or_none(properties.get("description"))
        direction = _str_or_none(properties.get("direction"))
        source_event_id = _str_or_none(properties.get("road_event_id")) or (
            f"{road_name or ''}:{properties.get('start_date') or ''}"
        )

    vehicle_impact = _str_or_none(properties.get("vehicle_impact"))
    road_type = WZDX_EVENT_TYPES.get(str(event_type), "CONSTRUCTION")

    row = {
        "source_event_id": source_event_id,
        "state": state,
        "type": road_type,
        "severity": VEHICLE_IMPACT_SEVERITY.get(vehicle_impact or "", "INFO"),
        "title": road_name or f"{road_type} on {state}",
        "description": description,
        "direction": direction,
        "route_name": road_name,
        "location_description": None,
        "started_at": _to_iso(properties.get("start_date")),
        "expected_end_at": _to_iso(properties.get("end_date")),
        "lane_impact": _lane_impact(vehicle_impact, properties.get("workers_present")),
        "vehicle_restrictions": _vehicle_restrictions(properties.get("restrictions")),
        "detour_description": None,
        "source_feed_url": feed_url,
        "raw": json.dumps(record, ensure_ascii=False),
    }
    return _with_geometry(row, geometry)


def _first(record: dict, *keys: str) -> object:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def _int_or_none(value: object) -> int | None:
    if value is None or value == "":
        return None
    return int(float(value))  # type: ignore[arg-type]


def normalize_tpims_facility(record: dict) -> dict:
    facility_id = _str_or_none(_first(record, "facilityId", "facility_id"))
    if facility_id is None:
        raise ValueError("facility without id")
    lat = float(_first(record, "latitude", "lat"))  # type: ignore[arg-type]
    lon = float(_first(record, "longitude", "lon", "lng"))  # type: ignore[arg-type]
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise ValueError(f"facility {facility_id} outside valid coordinates")

    amenities = record.get("amenities")
    direction = _str_or_none(record.get("direction"))
    return {
        "source_facility_id": facility_id,
        "name": str(_first(record, "name", "facilityName") or facility_id),
        "state": str(_first(record, "state", "stateCode") or "").upper()[:2],
        "highway": _str_or_none(record.get("highway")),
        "direction": direction.upper() if direction else None,
        "lat": lat,
        "lon": lon,
        "total_spaces": _int_or_none(record.get("totalSpaces")),
        "amenities": [str(a) for a in amenities] if isinstance(amenities, list) else [],
    }


def normalize_tpims_status(record: dict) -> dict:
    facility_id = _str_or_none(_first(record, "facilityId", "facility_id"))
    if facility_id is None:
        raise ValueError("status without facility id")
    trend = _str_or_none(record.get("trend"))
    return {
        "source_facility_id": facility_id,
        "available_spaces": _int_or_none(record.get("availableSpaces")),
        "trend": trend.upper() if trend else None,
        "last_updated_at": _to_iso(record.get("lastUpdated")),
    }


def merge_tpims(facility: dict, status: dict | None) -> dict:
    """Join a static facility with its availability into a parking row."""
    geom = {"type": "Point", "coordinates": [facility["lon"], facility["lat"]]}
    row = {
        "source_facility_id": facility["source_facility_id"],
        "name": facility["name"],
        "state": facility["state"],
        "highway": facility["highway"],
        "direction": facility["direction"],
        "total_spaces": facility["total_spaces"],
        "available_spaces": status["available_spaces"] if status else None,
        "trend": status["trend"] if status else None,
        "amenities": json.dumps(facility["amenities"]),
        "last_updated_at": status["last_updated_at"] if status else None,
    }
    return _with_geometry(row, geom)
