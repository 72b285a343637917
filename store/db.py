from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Database:
    conn: sqlite3.Connection
    lock: threading.Lock


_MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version INTEGER NOT NULL PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS road_events (
          id INTEGER NOT NULL PRIMARY KEY,
          source TEXT NOT NULL,
          source_event_id TEXT NOT NULL,
          state TEXT NOT NULL,
          type TEXT NOT NULL,
          severity TEXT NOT NULL,
          title TEXT NOT NULL,
          description TEXT NULL,
          direction TEXT NULL,
          route_name TEXT NULL,

          geom_geojson TEXT NOT NULL,
          min_lon REAL NOT NULL,
          min_lat REAL NOT NULL,
          max_lon REAL NOT NULL,
          max_lat REAL NOT NULL,

          location_description TEXT NULL,
          started_at TEXT NULL,
          expected_end_at TEXT NULL,
          lane_impact TEXT NULL,
          vehicle_restrictions TEXT NOT NULL DEFAULT '[]',
          detour_description TEXT NULL,
          source_feed_url TEXT NULL,
          is_active INTEGER NOT NULL DEFAULT 1,
          raw TEXT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          UNIQUE (source, source_event_id)
        );

        CREATE INDEX IF NOT EXISTS road_events_active_bbox_idx
          ON road_events(is_active, min_lon, max_lon, min_lat, max_lat);
        CREATE INDEX IF NOT EXISTS road_events_state_idx ON road_events(state);

        CREATE TABLE IF NOT EXISTS weather_alerts (
          id INTEGER NOT NULL PRIMARY KEY,
          source TEXT NOT NULL,
          nws_id TEXT NOT NULL,
          event TEXT NOT NULL,
          severity TEXT NOT NULL,
          urgency TEXT NULL,
          certainty TEXT NULL,
          headline TEXT NULL,
          description TEXT NULL,
          instruction TEXT NULL,
          area_description TEXT NULL,
          affected_zones TEXT NOT NULL DEFAULT '[]',

          geom_geojson TEXT NULL,
          min_lon REAL NULL,
          min_lat REAL NULL,
          max_lon REAL NULL,
          max_lat REAL NULL,

          onset TEXT NULL,
          expires TEXT NULL,
          sender_name TEXT NULL,
          wind_speed TEXT NULL,
          snow_amount TEXT NULL,
          is_active INTEGER NOT NULL DEFAULT 1,
          raw TEXT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          UNIQUE (source, nws_id)
        );

        CREATE INDEX IF NOT EXISTS weather_alerts_active_bbox_idx
          ON weather_alerts(is_active, min_lon, max_lon, min_lat, max_lat);
        CREATE INDEX IF NOT EXISTS weather_alerts_event_idx ON weather_alerts(event);

        CREATE TABLE IF NOT EXISTS community_reports (
          id INTEGER NOT NULL PRIMARY KEY,
          source TEXT NOT NULL DEFAULT 'community',
          report_id TEXT NOT NULL,
          user_id TEXT NULL,
          type TEXT NOT NULL,
          title TEXT NOT NULL,
          description TEXT NULL,

          geom_geojson TEXT NOT NULL,
          min_lon REAL NOT NULL,
          min_lat REAL NOT NULL,
          max_lon REAL NOT NULL,
          max_lat REAL NOT NULL,

          location_description TEXT NULL,
          route_name TEXT NULL,
          state TEXT NULL,
          severity TEXT NOT NULL DEFAULT 'INFO',
          upvotes INTEGER NOT NULL DEFAULT 0,
          downvotes INTEGER NOT NULL DEFAULT 0,
          is_active INTEGER NOT NULL DEFAULT 1,
          expires_at TEXT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          UNIQUE (source, report_id)
        );

        CREATE INDEX IF NOT EXISTS community_reports_active_bbox_idx
          ON community_reports(is_active, min_lon, max_lon, min_lat, max_lat);

        CREATE TABLE IF NOT EXISTS community_report_votes (
          report_id TEXT NOT NULL,
          user_id TEXT NOT NULL,
          vote TEXT NOT NULL,
          created_at TEXT NOT NULL,
          PRIMARY KEY (report_id, user_id)
        );

        CREATE TABLE IF NOT EXISTS parking_facilities (
          id INTEGER NOT NULL PRIMARY KEY,
          source TEXT NOT NULL,
          source_facility_id TEXT NOT NULL,
          name TEXT NOT NULL,
          state TEXT NOT NULL,
          highway TEXT NULL,
          direction TEXT NULL,

          geom_geojson TEXT NOT NULL,
          min_lon REAL NOT NULL,
          min_lat REAL NOT NULL,
          max_lon REAL NOT NULL,
          max_lat REAL NOT NULL,

          total_spaces INTEGER NULL,
          available_spaces INTEGER NULL,
          trend TEXT NULL,
          amenities TEXT NOT NULL DEFAULT '[]',
          last_updated_at TEXT NULL,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          UNIQUE (source, source_facility_id)
        );

        CREATE INDEX IF NOT EXISTS parking_facilities_active_bbox_idx
          ON parking_facilities(is_active, min_lon, max_lon, min_lat, max_lat);

        CREATE TABLE IF NOT EXISTS feed_status (
          feed_name TEXT NOT NULL PRIMARY KEY,
          feed_url TEXT NOT NULL,
          is_enabled INTEGER NOT NULL DEFAULT 1,
          refresh_interval_minutes INTEGER NOT NULL DEFAULT 5,
          last_success_at TEXT NULL,
          last_error_at TEXT NULL,
          last_error_message TEXT NULL,
          record_count INTEGER NOT NULL DEFAULT 0,
          avg_fetch_ms INTEGER NULL,
          status TEXT NOT NULL DEFAULT 'unknown',
          updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_config (
          key TEXT NOT NULL PRIMARY KEY,
          value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS cache_entries (
          key TEXT NOT NULL PRIMARY KEY,
          value TEXT NOT NULL,
          expires_at REAL NOT NULL
        );
        """,
    ),
]


def open_database(path: Path) -> Database:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    _apply_migrations(conn)
    return Database(conn=conn, lock=threading.Lock())


def close_database(db: Database) -> None:
    with db.lock:
        db.conn.close()


def _apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER NOT NULL PRIMARY KEY);"
    )
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM schema_migrations;"
    ).fetchone()
    current_version = int(row["v"])

    for version, sql in _MIGRATIONS:
        if version <= current_version:
            continue
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_migrations(version) VALUES (?);", (version,))
        conn.commit()
