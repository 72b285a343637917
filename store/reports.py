from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from types import MappingProxyType

from app.errors import PersistenceError
from store.db import Database


REPORT_EXPIRY_HOURS: Mapping[str, int] = MappingProxyType(
    {
        "ROAD_HAZARD": 8,
        "CLOSURE_UPDATE": 24,
        "WEATHER_CONDITION": 8,
        "WAIT_TIME": 4,
        "PARKING_FULL": 4,
        "OTHER": 12,
    }
)
REPORT_SEVERITIES = frozenset({"CRITICAL", "WARNING", "ADVISORY", "INFO"})
US_BOUNDS = (17.0, 72.0, -180.0, -65.0)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="seconds").replace("+00:00", "Z")


def is_within_us(lat: float, lng: float) -> bool:
    min_lat, max_lat, min_lng, max_lng = US_BOUNDS
    return min_lat <= lat <= max_lat and min_lng <= lng <= max_lng


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _report_view(row: sqlite3.Row) -> dict:
    return {
        "id": row["report_id"],
        "userId": row["user_id"],
        "type": row["type"],
        "title": row["title"],
        "description": row["description"],
        "geometry": json.loads(row["geom_geojson"]),
        "locationDescription": row["location_description"],
        "routeName": row["route_name"],
        "state": row["state"],
        "severity": row["severity"],
        "upvotes": int(row["upvotes"]),
        "downvotes": int(row["downvotes"]),
        "isActive": bool(row["is_active"]),
        "expiresAt": row["expires_at"],
        "createdAt": row["created_at"],
    }


def create_report(
    db: Database,
    *,
    user_id: str,
    report_type: str,
    title: str,
    lat: float,
    lng: float,
    severity: str = "INFO",
    description: str | None = None,
    location_description: str | None = None,
    route_name: str | None = None,
    state: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Insert a community report and return its API view.

    Raises ValueError for an unknown type or severity, an empty title, or a
    location outside the continental and offshore US bounds.
    """
    report_type = report_type.upper()
    severity = severity.upper()
    if report_type not in REPORT_EXPIRY_HOURS:
        raise ValueError(f"unknown report type: {report_type}")
    if severity not in REPORT_SEVERITIES:
        raise ValueError(f"unknown severity: {severity}")
    title = (title or "").strip()
    if not title:
        raise ValueError("title is required")
    if not is_within_us(lat, lng):
        raise ValueError("location must be within the United States")

    now = now or datetime.now(tz=UTC)
    now_iso = _iso(now)
    report_id = str(uuid.uuid4())
    geom = {"type": "Point", "coordinates": [lng, lat]}

    with db.lock:
        try:
            db.conn.execute(
                """
                INSERT INTO community_reports(
                  report_id, user_id, type, title, description,
                  geom_geojson, min_lon, min_lat, max_lon, max_lat,
                  location_description, route_name, state, severity,
                  expires_at, created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    report_id,
                    user_id,
                    report_type,
                    title[:200],
                    _clean(description),
                    json.dumps(geom),
                    lng,
                    lat,
                    lng,
                    lat,
                    _clean(location_description),
                    _clean(route_name),
                    state.strip().upper()[:2] if state and state.strip() else None,
                    severity,
                    _iso(now + timedelta(hours=REPORT_EXPIRY_HOURS[report_type])),
                    now_iso,
                    now_iso,
                ),
            )
            db.conn.commit()
        except sqlite3.Error as e:
            db.conn.rollback()
            raise PersistenceError(f"report insert failed: {e}") from e
        row = db.conn.execute(
            "SELECT * FROM community_reports WHERE report_id = ?;", (report_id,)
        ).fetchone()
    return _report_view(row)


def vote_on_report(db: Database, *, report_id: str, user_id: str, vote: str) -> dict:
    """Record a vote and return the new counts.

    Repeating the same vote removes it; a different vote replaces it.
    Raises LookupError when the report does not exist.
    """
    if vote not in ("up", "down"):
        raise ValueError("vote must be 'up' or 'down'")

    with db.lock:
        try:
            report = db.conn.execute(
                "SELECT 1 FROM community_reports WHERE report_id = ?;", (report_id,)
            ).fetchone()
            if report is None:
                raise LookupError(report_id)

            existing = db.conn.execute(
                "SELECT vote FROM community_report_votes WHERE report_id = ? AND user_id = ?;",
                (report_id, user_id),
            ).fetchone()
            current = str(existing["vote"]) if existing else None
            col = "upvotes" if vote == "up" else "downvotes"

            if current == vote:
                db.conn.execute(
                    "DELETE FROM community_report_votes WHERE report_id = ? AND user_id = ?;",
                    (report_id, user_id),
                )
                db.conn.execute(
                    f"UPDATE community_reports SET {col} = MAX(0, {col} - 1) WHERE report_id = ?;",
                    (report_id,),
                )
                user_vote = None
            elif current is not None:
                prev = "upvotes" if current == "up" else "downvotes"
                db.conn.execute(
                    "UPDATE community_report_votes SET vote = ? WHERE report_id = ? AND user_id = ?;",
                    (vote, report_id, user_id),
                )
                db.conn.execute(
                    f"""
                    UPDATE community_reports
                    SET {prev} = MAX(0, {prev} - 1), {col} = {col} + 1
                    WHERE report_id = ?;
                    """,
                    (report_id,),
                )
                user_vote = vote
            else:
                db.conn.execute(
                    """
                    INSERT INTO community_report_votes(report_id, user_id, vote, created_at)
                    VALUES(?, ?, ?, ?);
                    """,
                    (report_id, user_id, vote, _iso(datetime.now(tz=UTC))),
                )
                db.conn.execute(
                    f"UPDATE community_reports SET {col} = {col} + 1 WHERE report_id = ?;",
                    (report_id,),
                )
                user_vote = vote

            counts = db.conn.execute(
                "SELECT upvotes, downvotes FROM community_reports WHERE report_id = ?;",
                (report_id,),
            ).fetchone()
            db.conn.commit()
        except sqlite3.Error as e:
            db.conn.rollback()
            raise PersistenceError(f"vote failed: {e}") from e

    return {
        "upvotes": int(counts["upvotes"]),
        "downvotes": int(counts["downvotes"]),
        "userVote": user_vote,
    }
