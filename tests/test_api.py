import json
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.settings import Settings


FIXTURES = Path(__file__).resolve().parent / "fixtures"

FEED_PACK = """
- id: test-wzdx
  name: Test DOT
  url: https://wzdx.test/feed
  state: IA
  refresh_minutes: 10
- id: broken-wzdx
  name: Broken DOT
  url: https://wzdx.test/broken
  state: NE
"""

PLACES = {
    "Denver, CO": (-104.99, 39.74),
    "Cheyenne, WY": (-104.82, 41.14),
}


class Upstream:
    def __init__(self) -> None:
        self.rate_limited = False
        self.nws = (FIXTURES / "nws_alerts.geojson").read_bytes()
        self.zone = (FIXTURES / "nws_zone_coz039.geojson").read_bytes()
        self.wzdx = (FIXTURES / "wzdx_v4.json").read_bytes()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host, path = request.url.host, request.url.path
        if host == "api.weather.gov":
            if path == "/alerts/active":
                return httpx.Response(200, content=self.nws)
            if path.endswith("/COZ039"):
                return httpx.Response(200, content=self.zone)
            return httpx.Response(404)
        if host == "wzdx.test":
            if path == "/feed":
                return httpx.Response(200, content=self.wzdx)
            return httpx.Response(500, text="boom")
        if host == "api.openrouteservice.org":
            if path == "/geocode/search":
                place = PLACES.get(request.url.params["text"])
                features = []
                if place:
                    features.append(
                        {
                            "geometry": {"type": "Point", "coordinates": list(place)},
                            "properties": {"label": request.url.params["text"]},
                        }
                    )
                return httpx.Response(200, json={"features": features})
            if path == "/v2/directions/driving-hgv/geojson":
                if self.rate_limited:
                    return httpx.Response(429, json={"error": "Rate limit exceeded"})
                coords = json.loads(request.content)["coordinates"]
                return httpx.Response(
                    200,
                    json={
                        "features": [
                            {
                                "geometry": {"type": "LineString", "coordinates": coords},
                                "properties": {"summary": {"distance": 161000.0, "duration": 5900.0}},
                            }
                        ]
                    },
                )
        if host == "nominatim.openstreetmap.org":
            return httpx.Response(200, json=[])
        return httpx.Response(404)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


def _app(tmp_path, upstream, *, autostart: bool = False):
    feeds_dir = tmp_path / "feeds"
    feeds_dir.mkdir(exist_ok=True)
    (feeds_dir / "wzdx.yaml").write_text(FEED_PACK, encoding="utf-8")
    settings = Settings(
        _env_file=None,
        DB_PATH=tmp_path / "roadpulse.db",
        FEEDS_DIR=feeds_dir,
        CRON_SECRET="s3cret",
        OPENROUTESERVICE_API_KEY="test-key",
        SCHEDULER_AUTOSTART=autostart,
    )
    return create_app(settings, transport=httpx.MockTransport(upstream))


@pytest.fixture
def client(tmp_path, upstream):
    with TestClient(_app(tmp_path, upstream)) as test_client:
        yield test_client


def test_feeds_are_registered(client) -> None:
    res = client.get("/api/feeds")
    assert res.status_code == 200
    feeds = {f["feedName"]: f for f in res.json()}
    assert set(feeds) == {"nws-alerts", "test-wzdx", "broken-wzdx"}
    assert feeds["test-wzdx"]["refreshIntervalMinutes"] == 10
    assert feeds["nws-alerts"]["refreshIntervalMinutes"] == 5
    assert all(f["status"] == "unknown" for f in feeds.values())


def test_admin_ingest_single_feed(client) -> None:
    res = client.post("/api/admin/ingest", json={"feed": "nws-alerts"})
    assert res.status_code == 200
    body = res.json()
    assert body["feed"] == "nws-alerts"
    assert body["result"]["upserted"] == 2
    assert set(body["result"]) >= {"upserted", "deactivated", "fetchMs", "total"}

    feeds = {f["feedName"]: f for f in client.get("/api/feeds").json()}
    assert feeds["nws-alerts"]["status"] == "healthy"
    assert feeds["nws-alerts"]["recordCount"] == 2


def test_admin_ingest_unknown_and_failing_feeds(client) -> None:
    res = client.post("/api/admin/ingest", json={"feed": "mars-wzdx"})
    assert res.status_code == 400
    assert res.json()["code"] == "UNKNOWN_FEED"
    assert "nws-alerts" in res.json()["validFeeds"]

    res = client.post("/api/admin/ingest", json={"feed": "broken-wzdx"})
    assert res.status_code == 500
    assert res.json()["code"] == "INGEST_ERROR"
    assert "HTTP 500" in res.json()["details"]

    feeds = {f["feedName"]: f for f in client.get("/api/feeds").json()}
    assert feeds["broken-wzdx"]["status"] == "down"


def test_admin_ingest_all(client) -> None:
    res = client.post("/api/admin/ingest", json={"feed": "all"})
    assert res.status_code == 200
    body = res.json()
    assert body["totals"]["feeds"] == 3
    assert body["totals"]["failed"] == 1
    errors = [r for r in body["results"] if "error" in r]
    assert [r["feed"] for r in errors] == ["broken-wzdx"]
    assert errors[0]["code"] == "FETCH_ERROR"


def test_cron_requires_secret(client) -> None:
    assert client.get("/api/cron/ingest").status_code == 401
    assert client.post("/api/cron/ingest", headers={"X-Cron-Secret": "nope"}).status_code == 401

    res = client.get("/api/cron/ingest", headers={"X-Cron-Secret": "s3cret"})
    assert res.status_code == 200
    assert res.json()["totals"]["succeeded"] == 2


def test_feed_config_update(client) -> None:
    res = client.patch(
        "/api/feeds/test-wzdx", json={"isEnabled": False, "refreshIntervalMinutes": 30}
    )
    assert res.status_code == 200
    assert res.json()["isEnabled"] is False
    assert res.json()["refreshIntervalMinutes"] == 30

    assert client.patch("/api/feeds/test-wzdx", json={"refreshIntervalMinutes": 0}).status_code == 422
    assert client.patch("/api/feeds/nope", json={"isEnabled": True}).status_code == 404

    body = client.post("/api/scheduler/trigger").json()
    assert "test-wzdx" not in [r["feed"] for r in body["results"]]


def test_scheduler_controls(client) -> None:
    status = client.get("/api/scheduler").json()
    assert status["state"] == "stopped"
    assert status["intervalMinutes"] == 5

    assert client.post("/api/scheduler/interval", json={"minutes": 0}).status_code == 422
    assert client.post("/api/scheduler/interval", json={"minutes": 12}).json()["intervalMinutes"] == 12
    assert client.post("/api/scheduler/pause").json()["state"] == "stopped"

    trigger = client.post("/api/scheduler/trigger")
    assert trigger.status_code == 200
    assert trigger.json()["totals"]["feeds"] == 3
    assert client.get("/api/scheduler").json()["lastTotals"]["feeds"] == 3


def test_pause_and_resume_a_started_scheduler(tmp_path, upstream) -> None:
    with TestClient(_app(tmp_path, upstream, autostart=True)) as client:
        status = client.get("/api/scheduler").json()
        assert status["state"] == "running"
        assert status["nextRunAt"] is not None

        paused = client.post("/api/scheduler/pause")
        assert paused.status_code == 200
        assert paused.json()["state"] == "paused"
        assert paused.json()["nextRunAt"] is None

        resumed = client.post("/api/scheduler/resume")
        assert resumed.status_code == 200
        assert resumed.json()["state"] == "running"

        interval = client.post("/api/scheduler/interval", json={"minutes": 15})
        assert interval.status_code == 200
        status = client.get("/api/scheduler").json()
        assert status["state"] == "running"
        assert status["intervalMinutes"] == 15
        assert status["nextRunAt"] is not None


def test_route_check_denver_to_cheyenne(client) -> None:
    client.post("/api/admin/ingest", json={"feed": "all"})

    res = client.post(
        "/api/route/check",
        json={"originAddress": "Denver, CO", "destinationAddress": "Cheyenne, WY"},
    )
    assert res.status_code == 200
    body = res.json()
    route = body["route"]
    assert (route["originLat"], route["originLng"]) == (39.74, -104.99)
    assert (route["destinationLat"], route["destinationLng"]) == (41.14, -104.82)
    assert route["corridorGeometry"]["type"] == "Polygon"

    events = [h["type"] for h in body["hazards"]]
    assert events == ["Winter Storm Warning", "High Wind Warning"]
    assert all(h["kind"] == "weather_alert" for h in body["hazards"])
    assert body["summary"]["totalHazards"] == 2
    assert "parking" not in body


def test_route_check_get_variant_and_parking_flag(client) -> None:
    res = client.get(
        "/api/route/check",
        params={
            "origin": "Start",
            "origin_lat": 39.74,
            "origin_lng": -104.99,
            "dest": "Cheyenne, WY",
            "miles": 100,
            "include_parking": "true",
        },
    )
    assert res.status_code == 200
    body = res.json()
    assert body["route"]["corridorMiles"] == 50.0
    assert body["parking"] == []


def test_route_check_errors(client, upstream) -> None:
    res = client.post("/api/route/check", json={"originAddress": "Denver, CO"})
    assert res.status_code == 400
    assert res.json()["code"] == "MISSING_INPUTS"

    res = client.post(
        "/api/route/check",
        json={"originAddress": "Denver, CO", "destinationAddress": "Atlantis"},
    )
    assert res.status_code == 404
    assert res.json()["code"] == "GEOCODE_NO_RESULTS"

    upstream.rate_limited = True
    res = client.post(
        "/api/route/check",
        json={
            "originAddress": "A",
            "originLat": 39.0,
            "originLng": -105.0,
            "destinationAddress": "B",
            "destinationLat": 40.0,
            "destinationLng": -105.0,
        },
    )
    assert res.status_code == 429
    assert res.json()["code"] == "RATE_LIMITED"
    assert res.json()["retryAfter"] == 60


def test_reports_and_votes(client) -> None:
    payload = {"type": "ROAD_HAZARD", "title": "Tire debris", "lat": 40.4, "lng": -104.9}
    assert client.post("/api/reports", json=payload).status_code == 401

    res = client.post("/api/reports", json=payload, headers={"X-User-Id": "driver-1"})
    assert res.status_code == 201
    report_id = res.json()["id"]

    bad = client.post(
        "/api/reports", json={**payload, "lat": 51.5, "lng": -0.1}, headers={"X-User-Id": "driver-1"}
    )
    assert bad.status_code == 400
    assert bad.json()["code"] == "INVALID_REPORT"

    vote = client.post(
        f"/api/reports/{report_id}/vote", json={"vote": "up"}, headers={"X-User-Id": "driver-2"}
    )
    assert vote.json() == {"upvotes": 1, "downvotes": 0, "userVote": "up"}

    missing = client.post(
        "/api/reports/nope/vote", json={"vote": "up"}, headers={"X-User-Id": "driver-2"}
    )
    assert missing.status_code == 404

    res = client.post(
        "/api/route/check",
        json={"originAddress": "Denver, CO", "destinationAddress": "Cheyenne, WY"},
    )
    kinds = [h["kind"] for h in res.json()["hazards"]]
    assert kinds == ["community_report"]
