from datetime import UTC, datetime

import pytest

from store.db import close_database, open_database
from store.reports import create_report, is_within_us, vote_on_report


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def db(tmp_path):
    database = open_database(tmp_path / "t.db")
    yield database
    close_database(database)


def test_create_report_sets_expiry_by_type(db) -> None:
    report = create_report(
        db,
        user_id="u1",
        report_type="wait_time",
        title="  Long line at the scale  ",
        lat=41.1,
        lng=-104.8,
        state="wy",
        now=NOW,
    )
    assert report["type"] == "WAIT_TIME"
    assert report["title"] == "Long line at the scale"
    assert report["state"] == "WY"
    assert report["severity"] == "INFO"
    assert report["expiresAt"] == "2026-03-01T16:00:00Z"
    assert report["geometry"] == {"type": "Point", "coordinates": [-104.8, 41.1]}
    assert report["upvotes"] == report["downvotes"] == 0


@pytest.mark.parametrize(
    "overrides",
    [
        {"report_type": "POTHOLE"},
        {"severity": "SEVERE"},
        {"title": "   "},
        {"lat": 51.5, "lng": -0.1},
        {"lat": 10.0, "lng": -90.0},
    ],
)
def test_create_report_rejects_invalid_input(db, overrides) -> None:
    kwargs = {
        "user_id": "u1",
        "report_type": "ROAD_HAZARD",
        "title": "Debris",
        "lat": 39.7,
        "lng": -105.0,
    }
    kwargs.update(overrides)
    with pytest.raises(ValueError):
        create_report(db, **kwargs)


def test_us_bounds_include_alaska_and_hawaii() -> None:
    assert is_within_us(61.2, -149.9)
    assert is_within_us(21.3, -157.8)
    assert not is_within_us(45.5, -60.0)


def test_vote_toggle_and_swap(db) -> None:
    report = create_report(
        db, user_id="u1", report_type="ROAD_HAZARD", title="Ice", lat=39.7, lng=-105.0
    )
    rid = report["id"]

    assert vote_on_report(db, report_id=rid, user_id="u2", vote="up") == {
        "upvotes": 1,
        "downvotes": 0,
        "userVote": "up",
    }
    assert vote_on_report(db, report_id=rid, user_id="u2", vote="down") == {
        "upvotes": 0,
        "downvotes": 1,
        "userVote": "down",
    }
    assert vote_on_report(db, report_id=rid, user_id="u2", vote="down") == {
        "upvotes": 0,
        "downvotes": 0,
        "userVote": None,
    }
    vote_on_report(db, report_id=rid, user_id="u3", vote="up")
    assert vote_on_report(db, report_id=rid, user_id="u4", vote="up")["upvotes"] == 2


def test_vote_on_missing_report(db) -> None:
    with pytest.raises(LookupError):
        vote_on_report(db, report_id="nope", user_id="u1", vote="up")
    with pytest.raises(ValueError):
        vote_on_report(db, report_id="nope", user_id="u1", vote="sideways")
