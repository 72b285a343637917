from __future__ import annotations

import asyncio
import json
import logging

import httpx

from normalize.normalize import zone_id_from_ref
from store.cache import TtlCache


logger = logging.getLogger(__name__)

NWS_ZONE_BASE_URL = "https://api.weather.gov/zones/forecast"
ZONE_TIMEOUT = httpx.Timeout(connect=5.0, read=15.0, write=5.0, pool=5.0)
_NO_GEOMETRY = "null"


def _zone_cache_key(zone_id: str) -> str:
    return f"nws:zone:geom:{zone_id}"


class ZoneResolver:
    """Resolve NWS zone references to polygon geometries.

    Results are cached per bare zone id, including a sentinel for zones NWS
    has no geometry for. Transient upstream failures are not cached.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: TtlCache,
        *,
        user_agent: str,
        concurrency: int = 5,
        ttl_seconds: int = 86_400,
        base_url: str = NWS_ZONE_BASE_URL,
    ) -> None:
        self._client = client
        self._cache = cache
        self._user_agent = user_agent
        self._concurrency = max(1, concurrency)
        self._ttl_seconds = ttl_seconds
        self._base_url = base_url.rstrip("/")

    async def resolve(self, zone_refs: list[str]) -> dict[str, dict | None]:
        unique = list(dict.fromkeys(zone_refs))
        if not unique:
            return {}
        sem = asyncio.Semaphore(self._concurrency)

        async def one(ref: str) -> tuple[str, dict | None]:
            async with sem:
                return ref, await self._resolve_one(ref)

        pairs = await asyncio.gather(*(one(ref) for ref in unique))
        return dict(pairs)

    async def _resolve_one(self, ref: str) -> dict | None:
        zone_id = zone_id_from_ref(ref)
        key = _zone_cache_key(zone_id)
        cached = self._cache.get(key)
        if cached is not None:
            return None if cached == _NO_GEOMETRY else json.loads(cached)

        url = ref if ref.startswith(("http://", "https://")) else f"{self._base_url}/{zone_id}"
        try:
            response = await self._client.get(
                url,
                headers={"User-Agent": self._user_agent, "Accept": "application/geo+json"},
                timeout=ZONE_TIMEOUT,
            )
        except httpx.HTTPError as e:
            logger.debug("zone %s fetch failed, will retry next run: %s", zone_id, e)
            return None

        if response.status_code == 429 or response.status_code >= 500:
            logger.debug("zone %s got HTTP %s, will retry next run", zone_id, response.status_code)
            return None

        geometry = None
        if response.is_success:
            try:
                geometry = response.json().get("geometry")
            except (ValueError, AttributeError):
                geometry = None

        self._cache.set(
            key,
            json.dumps(geometry) if geometry else _NO_GEOMETRY,
            self._ttl_seconds,
        )
        return geometry or None


def merge_to_multipolygon(geometries: list[dict | None]) -> dict | None:
    polygons: list = []
    for geom in geometries:
        if not geom:
            continue
        if geom.get("type") == "Polygon":
            polygons.append(geom["coordinates"])
        elif geom.get("type") == "MultiPolygon":
            polygons.extend(geom["coordinates"])
    if not polygons:
        return None
    return {"type": "MultiPolygon", "coordinates": polygons}
