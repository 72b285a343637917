from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from app.errors import PersistenceError
from store.db import Database


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HazardTable:
    name: str
    key_column: str
    columns: tuple[str, ...]
    expiry_column: str | None = None
    extra_where: str = ""


_GEOM_COLUMNS = ("geom_geojson", "min_lon", "min_lat", "max_lon", "max_lat")

ROAD_EVENTS = HazardTable(
    name="road_events",
    key_column="source_event_id",
    columns=(
        "state",
        "type",
        "severity",
        "title",
        "description",
        "direction",
        "route_name",
        *_GEOM_COLUMNS,
        "location_description",
        "started_at",
        "expected_end_at",
        "lane_impact",
        "vehicle_restrictions",
        "detour_description",
        "source_feed_url",
        "raw",
    ),
    expiry_column="expected_end_at",
)

WEATHER_ALERTS = HazardTable(
    name="weather_alerts",
    key_column="nws_id",
    columns=(
        "event",
        "severity",
        "urgency",
        "certainty",
        "headline",
        "description",
        "instruction",
        "area_description",
        "affected_zones",
        *_GEOM_COLUMNS,
        "onset",
        "expires",
        "sender_name",
        "wind_speed",
        "snow_amount",
        "raw",
    ),
    expiry_column="expires",
    extra_where="geom_geojson IS NOT NULL",
)

COMMUNITY_REPORTS = HazardTable(
    name="community_reports",
    key_column="report_id",
    columns=(
        "user_id",
        "type",
        "title",
        "description",
        *_GEOM_COLUMNS,
        "location_description",
        "route_name",
        "state",
        "severity",
        "expires_at",
    ),
    expiry_column="expires_at",
    extra_where="(upvotes - downvotes) >= -2",
)

PARKING_FACILITIES = HazardTable(
    name="parking_facilities",
    key_column="source_facility_id",
    columns=(
        "name",
        "state",
        "highway",
        "direction",
        *_GEOM_COLUMNS,
        "total_spaces",
        "available_spaces",
        "trend",
        "amenities",
        "last_updated_at",
    ),
)

TABLES: Mapping[str, HazardTable] = MappingProxyType(
    {
        t.name: t
        for t in (ROAD_EVENTS, WEATHER_ALERTS, COMMUNITY_REPORTS, PARKING_FACILITIES)
    }
)


def _upsert_sql(table: HazardTable) -> str:
    cols = ("source", table.key_column, *table.columns)
    placeholders = ", ".join("?" for _ in cols)
    updates = ",\n  ".join(f"{c} = excluded.{c}" for c in table.columns)
    return f"""
        INSERT INTO {table.name}(
          {", ".join(cols)}, is_active, created_at, updated_at
        )
        VALUES({placeholders}, 1, ?, ?)
        ON CONFLICT(source, {table.key_column}) DO UPDATE SET
          {updates},
          is_active = 1,
          updated_at = excluded.updated_at;
    """


def _upsert(
    conn: sqlite3.Connection,
    table: HazardTable,
    *,
    source: str,
    rows: list[dict],
    now_iso: str,
) -> int:
    sql = _upsert_sql(table)
    for row in rows:
        params = [source, row[table.key_column]]
        params.extend(row.get(c) for c in table.columns)
        params.extend([now_iso, now_iso])
        conn.execute(sql, params)
    return len(rows)


def _deactivate_missing(
    conn: sqlite3.Connection,
    table: HazardTable,
    *,
    source: str,
    live_keys: list[str],
    now_iso: str,
) -> int:
    cur = conn.execute(
        f"""
        UPDATE {table.name}
        SET is_active = 0, updated_at = ?
        WHERE source = ?
          AND is_active = 1
          AND {table.key_column} NOT IN (SELECT value FROM json_each(?));
        """,
        (now_iso, source, json.dumps(live_keys)),
    )
    return cur.rowcount


def write_batch(
    db: Database,
    table: HazardTable,
    *,
    source: str,
    rows: list[dict],
    full_snapshot: bool,
    now_iso: str,
) -> tuple[int, int]:
    """Upsert `rows` and, for snapshot feeds, deactivate the rest of `source`.

    Runs as one transaction. Returns `(upserted, deactivated)`.
    """
    by_key: dict[str, dict] = {}
    for row in rows:
        by_key[str(row[table.key_column])] = row
    deduped = list(by_key.values())

    with db.lock:
        try:
            upserted = _upsert(
                db.conn, table, source=source, rows=deduped, now_iso=now_iso
            )
            deactivated = 0
            if full_snapshot:
                deactivated = _deactivate_missing(
                    db.conn,
                    table,
                    source=source,
                    live_keys=list(by_key),
                    now_iso=now_iso,
                )
            db.conn.commit()
        except sqlite3.Error as e:
            db.conn.rollback()
            raise PersistenceError(f"write to {table.name} failed: {e}") from e
    return upserted, deactivated


def select_active_candidates(
    db: Database,
    table: HazardTable,
    *,
    bbox: tuple[float, float, float, float],
    now_iso: str,
) -> list[dict]:
    """Active rows whose bounding box overlaps `bbox`, excluding expired ones.

    Newest first. No cap is applied here; a bbox hit may still miss the
    corridor, so callers limit after the exact test.
    """
    min_lon, min_lat, max_lon, max_lat = bbox
    where = [
        "is_active = 1",
        "geom_geojson IS NOT NULL",
        "max_lon >= ?",
        "min_lon <= ?",
        "max_lat >= ?",
        "min_lat <= ?",
    ]
    params: list[object] = [min_lon, max_lon, min_lat, max_lat]
    if table.expiry_column:
        where.append(f"({table.expiry_column} IS NULL OR {table.expiry_column} > ?)")
        params.append(now_iso)
    if table.extra_where:
        where.append(table.extra_where)

    with db.lock:
        rows = db.conn.execute(
            f"""
            SELECT * FROM {table.name}
            WHERE {" AND ".join(where)}
            ORDER BY updated_at DESC;
            """,
            params,
        ).fetchall()
    return [{k: r[k] for k in r.keys()} for r in rows]

