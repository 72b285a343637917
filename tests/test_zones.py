import asyncio
from pathlib import Path

import httpx

from ingest.zones import ZoneResolver, merge_to_multipolygon
from store.cache import TtlCache
from store.db import close_database, open_database


FIXTURES = Path(__file__).resolve().parent / "fixtures"


def _resolve(tmp_path, handler, refs_per_call):
    db = open_database(tmp_path / "zones.db")
    calls: list[str] = []

    def counting(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path.rsplit("/", 1)[-1])
        return handler(request)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(counting)) as client:
            resolver = ZoneResolver(client, TtlCache(db), user_agent="test", concurrency=2)
            return [await resolver.resolve(refs) for refs in refs_per_call]

    try:
        return asyncio.run(run()), calls
    finally:
        close_database(db)


def test_resolve_dedupes_and_caches(tmp_path) -> None:
    zone = (FIXTURES / "nws_zone_coz039.geojson").read_bytes()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/COZ039"):
            return httpx.Response(200, content=zone)
        return httpx.Response(404, json={"title": "Not Found"})

    ref = "https://api.weather.gov/zones/forecast/COZ039"
    results, calls = _resolve(
        tmp_path,
        handler,
        [[ref, ref, "COZ040"], ["COZ039", "COZ040"]],
    )

    first, second = results
    assert set(first) == {ref, "COZ040"}
    assert first[ref]["type"] == "Polygon"
    assert first["COZ040"] is None
    # the 404 is remembered, and bare ids share the URL's cache entry
    assert second["COZ039"] == first[ref]
    assert second["COZ040"] is None
    assert sorted(calls) == ["COZ039", "COZ040"]


def test_transient_failures_are_not_cached(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/COZ041"):
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(503)

    results, calls = _resolve(tmp_path, handler, [["COZ041", "COZ042"], ["COZ041", "COZ042"]])

    assert results[0] == {"COZ041": None, "COZ042": None}
    assert results[1] == {"COZ041": None, "COZ042": None}
    assert sorted(calls) == ["COZ041", "COZ041", "COZ042", "COZ042"]


def test_feature_without_geometry_is_cached_as_sentinel(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"type": "Feature", "geometry": None})

    results, calls = _resolve(tmp_path, handler, [["MTZ001"], ["MTZ001"]])
    assert results == [{"MTZ001": None}, {"MTZ001": None}]
    assert calls == ["MTZ001"]


def test_merge_to_multipolygon() -> None:
    square = [[[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]]
    other = [[[2, 2], [3, 2], [3, 3], [2, 3], [2, 2]]]
    merged = merge_to_multipolygon(
        [
            {"type": "Polygon", "coordinates": square},
            None,
            {"type": "Point", "coordinates": [5, 5]},
            {"type": "MultiPolygon", "coordinates": [other]},
        ]
    )
    assert merged == {"type": "MultiPolygon", "coordinates": [square, other]}
    assert merge_to_multipolygon([None, {"type": "LineString", "coordinates": []}]) is None
    assert merge_to_multipolygon([]) is None
