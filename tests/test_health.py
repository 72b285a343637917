from datetime import UTC, datetime, timedelta

import pytest

from health.health import (
    FeedDefinition,
    compute_status,
    ensure_feeds,
    get_feed_row,
    list_feed_status,
    record_feed_error,
    record_feed_success,
    update_feed_config,
)
from store.db import close_database, open_database


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="seconds").replace("+00:00", "Z")


def test_compute_status() -> None:
    recent = _iso(NOW - timedelta(minutes=5))
    stale = _iso(NOW - timedelta(minutes=45))

    assert compute_status(last_outcome="unknown", is_enabled=True, last_success_at=None, now=NOW) == "unknown"
    assert compute_status(last_outcome="healthy", is_enabled=True, last_success_at=recent, now=NOW) == "healthy"
    assert compute_status(last_outcome="healthy", is_enabled=True, last_success_at=stale, now=NOW) == "degraded"
    assert compute_status(last_outcome="healthy", is_enabled=False, last_success_at=stale, now=NOW) == "healthy"
    assert compute_status(last_outcome="down", is_enabled=True, last_success_at=recent, now=NOW) == "down"
    assert compute_status(last_outcome="down", is_enabled=True, last_success_at=None, now=NOW) == "down"


def test_ensure_feeds_keeps_operator_settings(tmp_path) -> None:
    db = open_database(tmp_path / "t.db")
    try:
        ensure_feeds(db, [FeedDefinition(name="a", url="https://a/1")], default_interval_minutes=5)
        assert update_feed_config(db, "a", is_enabled=False, refresh_interval_minutes=20)

        ensure_feeds(
            db,
            [FeedDefinition(name="a", url="https://a/2", refresh_interval_minutes=3)],
            default_interval_minutes=5,
        )
        row = get_feed_row(db, "a")
        assert row["feed_url"] == "https://a/2"
        assert row["is_enabled"] == 0
        assert row["refresh_interval_minutes"] == 20
    finally:
        close_database(db)


def test_avg_fetch_ms_is_weighted_toward_history(tmp_path) -> None:
    db = open_database(tmp_path / "t.db")
    try:
        record_feed_success(db, feed_name="a", feed_url="u", record_count=1, fetch_ms=100)
        assert get_feed_row(db, "a")["avg_fetch_ms"] == 100
        record_feed_success(db, feed_name="a", feed_url="u", record_count=1, fetch_ms=200)
        assert get_feed_row(db, "a")["avg_fetch_ms"] == 125
    finally:
        close_database(db)


def test_list_feed_status_view(tmp_path) -> None:
    db = open_database(tmp_path / "t.db")
    try:
        ensure_feeds(
            db,
            [FeedDefinition(name="nws-alerts", url="u"), FeedDefinition(name="iowa-wzdx", url="v")],
            default_interval_minutes=5,
        )
        record_feed_success(db, feed_name="nws-alerts", feed_url="u", record_count=7, fetch_ms=80)
        record_feed_error(db, feed_name="iowa-wzdx", feed_url="v", error="timeout fetching v")

        feeds = {f["feedName"]: f for f in list_feed_status(db)}
        assert feeds["nws-alerts"]["status"] == "healthy"
        assert feeds["nws-alerts"]["recordCount"] == 7
        assert feeds["nws-alerts"]["avgFetchMs"] == 80
        assert feeds["nws-alerts"]["refreshIntervalMinutes"] == 5
        assert feeds["iowa-wzdx"]["status"] == "down"
        assert feeds["iowa-wzdx"]["lastErrorMessage"] == "timeout fetching v"
        assert feeds["iowa-wzdx"]["isEnabled"] is True

        later = datetime.now(tz=UTC) + timedelta(hours=1)
        feeds = {f["feedName"]: f for f in list_feed_status(db, now=later)}
        assert feeds["nws-alerts"]["status"] == "degraded"
    finally:
        close_database(db)


def test_update_feed_config_validation(tmp_path) -> None:
    db = open_database(tmp_path / "t.db")
    try:
        assert update_feed_config(db, "missing", is_enabled=True) is False
        with pytest.raises(ValueError):
            update_feed_config(db, "missing", refresh_interval_minutes=0)
    finally:
        close_database(db)
