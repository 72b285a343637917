from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from store.db import Database


STALE_AFTER_MINUTES = 30


@dataclass(frozen=True)
class FeedDefinition:
    name: str
    url: str
    enabled: bool = True
    refresh_interval_minutes: int | None = None


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _iso(dt: datetime) -> str:
    return dt.astimezone(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso(ts: str) -> datetime:
    if ts.endswith("Z"):
        return datetime.fromisoformat(ts.removesuffix("Z") + "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def compute_status(
    *,
    last_outcome: str,
    is_enabled: bool,
    last_success_at: str | None,
    now: datetime,
    stale_after_minutes: int = STALE_AFTER_MINUTES,
) -> str:
    if last_outcome == "down":
        return "down"
    if last_success_at is None:
        return "unknown"
    if is_enabled and now - parse_iso(last_success_at) > timedelta(
        minutes=stale_after_minutes
    ):
        return "degraded"
    return "healthy"


def ensure_feeds(
    db: Database, feeds: Iterable[FeedDefinition], *, default_interval_minutes: int
) -> None:
    now_iso = _iso(_utc_now())
    with db.lock:
        for feed in feeds:
            db.conn.execute(
                """
                INSERT OR IGNORE INTO feed_status(
                  feed_name, feed_url, is_enabled, refresh_interval_minutes, status, updated_at
                )
                VALUES(?, ?, ?, ?, 'unknown', ?);
                """,
                (
                    feed.name,
                    feed.url,
                    1 if feed.enabled else 0,
                    feed.refresh_interval_minutes or default_interval_minutes,
                    now_iso,
                ),
            )
            db.conn.execute(
                "UPDATE feed_status SET feed_url = ? WHERE feed_name = ?;",
                (feed.url, feed.name),
            )
        db.conn.commit()


def record_feed_success(
    db: Database,
    *,
    feed_name: str,
    feed_url: str,
    record_count: int,
    fetch_ms: int,
) -> None:
    now_iso = _iso(_utc_now())
    with db.lock:
        db.conn.execute(
            """
            INSERT OR IGNORE INTO feed_status(feed_name, feed_url, status, updated_at)
            VALUES(?, ?, 'unknown', ?);
            """,
            (feed_name, feed_url, now_iso),
        )
        db.conn.execute(
            """
            UPDATE feed_status
            SET feed_url = ?,
                status = 'healthy',
                last_success_at = ?,
                record_count = ?,
                avg_fetch_ms = CASE
                  WHEN avg_fetch_ms IS NULL THEN ?
                  ELSE CAST(ROUND(avg_fetch_ms * 0.75 + ? * 0.25) AS INTEGER)
                END,
                updated_at = ?
            WHERE feed_name = ?;
            """,
            (feed_url, now_iso, record_count, fetch_ms, fetch_ms, now_iso, feed_name),
        )
        db.conn.commit()


def record_feed_error(
    db: Database,
    *,
    feed_name: str,
    feed_url: str,
    error: str,
) -> None:
    now_iso = _iso(_utc_now())
    with db.lock:
        db.conn.execute(
            """
            INSERT OR IGNORE INTO feed_status(feed_name, feed_url, status, updated_at)
            VALUES(?, ?, 'unknown', ?);
            """,
            (feed_name, feed_url, now_iso),
        )
        db.conn.execute(
            """
            UPDATE feed_status
            SET status = 'down',
                last_error_at = ?,
                last_error_message = ?,
                updated_at = ?
            WHERE feed_name = ?;
            """,
            (now_iso, error[:1000], now_iso, feed_name),
        )
        db.conn.commit()


def get_feed_row(db: Database, feed_name: str) -> dict | None:
    with db.lock:
        row = db.conn.execute(
            "SELECT * FROM feed_status WHERE feed_name = ?;", (feed_name,)
        ).fetchone()
    if row is None:
        return None
    return {k: row[k] for k in row.keys()}


def list_feed_rows(db: Database) -> list[dict]:
    with db.lock:
        rows = db.conn.execute(
            "SELECT * FROM feed_status ORDER BY feed_name ASC;"
        ).fetchall()
    return [{k: r[k] for k in r.keys()} for r in rows]


def feed_status_view(
    row: dict,
    *,
    now: datetime | None = None,
    stale_after_minutes: int = STALE_AFTER_MINUTES,
) -> dict:
    is_enabled = bool(row["is_enabled"])
    return {
        "feedName": row["feed_name"],
        "status": compute_status(
            last_outcome=str(row["status"]),
            is_enabled=is_enabled,
            last_success_at=row["last_success_at"],
            now=now or _utc_now(),
            stale_after_minutes=stale_after_minutes,
        ),
        "lastSuccessAt": row["last_success_at"],
        "lastErrorAt": row["last_error_at"],
        "lastErrorMessage": row["last_error_message"],
        "recordCount": int(row["record_count"]),
        "avgFetchMs": row["avg_fetch_ms"],
        "isEnabled": is_enabled,
        "refreshIntervalMinutes": int(row["refresh_interval_minutes"]),
    }


def list_feed_status(
    db: Database,
    *,
    now: datetime | None = None,
    stale_after_minutes: int = STALE_AFTER_MINUTES,
) -> list[dict]:
    return [
        feed_status_view(row, now=now, stale_after_minutes=stale_after_minutes)
        for row in list_feed_rows(db)
    ]


def update_feed_config(
    db: Database,
    feed_name: str,
    *,
    is_enabled: bool | None = None,
    refresh_interval_minutes: int | None = None,
) -> bool:
    if refresh_interval_minutes is not None and refresh_interval_minutes < 1:
        raise ValueError("refresh_interval_minutes must be >= 1")

    sets: list[str] = []
    params: list[object] = []
    if is_enabled is not None:
        sets.append("is_enabled = ?")
        params.append(1 if is_enabled else 0)
    if refresh_interval_minutes is not None:
        sets.append("refresh_interval_minutes = ?")
        params.append(int(refresh_interval_minutes))
    sets.append("updated_at = ?")
    params.append(_iso(_utc_now()))
    params.append(feed_name)

    with db.lock:
        cur = db.conn.execute(
            f"UPDATE feed_status SET {', '.join(sets)} WHERE feed_name = ?;", params
        )
        db.conn.commit()
    return cur.rowcount > 0


def last_attempt_at(row: dict) -> datetime | None:
    stamps = [
        parse_iso(str(ts))
        for ts in (row.get("last_success_at"), row.get("last_error_at"))
        if ts
    ]
    return max(stamps) if stamps else None
