from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass

import httpx

from app.errors import GeocodeNoResults
from store.cache import TtlCache


logger = logging.getLogger(__name__)

GEOCODE_TIMEOUT = httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0)


@dataclass(frozen=True)
class GeocodeResult:
    address: str
    lat: float
    lng: float


class Geocoder:
    """Address to coordinates, OpenRouteService Pelias first then Nominatim."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: TtlCache,
        *,
        user_agent: str,
        ors_api_key: str | None,
        ors_base_url: str = "https://api.openrouteservice.org",
        nominatim_base_url: str = "https://nominatim.openstreetmap.org",
        ttl_seconds: int = 3600,
    ) -> None:
        self._client = client
        self._cache = cache
        self._user_agent = user_agent
        self._ors_api_key = ors_api_key
        self._ors_base_url = ors_base_url.rstrip("/")
        self._nominatim_base_url = nominatim_base_url.rstrip("/")
        self._ttl_seconds = ttl_seconds

    async def geocode(self, text: str) -> GeocodeResult:
        query = " ".join(text.split())
        if not query:
            raise GeocodeNoResults("empty address")

        key = f"geocode:{query.lower()}"
        cached = self._cache.get(key)
        if cached is not None:
            return GeocodeResult(**json.loads(cached))

        result = None
        if self._ors_api_key:
            try:
                result = await self._pelias(query)
            except (httpx.HTTPError, ValueError, KeyError, IndexError) as e:
                logger.info("Pelias geocode failed for %r, trying Nominatim: %s", query, e)
        if result is None:
            result = await self._nominatim(query)

        self._cache.set(key, json.dumps(asdict(result)), self._ttl_seconds)
        return result

    async def _pelias(self, query: str) -> GeocodeResult | None:
        response = await self._client.get(
            f"{self._ors_base_url}/geocode/search",
            params={
                "api_key": self._ors_api_key,
                "text": query,
                "size": 5,
                "boundary.country": "US",
            },
            headers={"Accept": "application/json", "User-Agent": self._user_agent},
            timeout=GEOCODE_TIMEOUT,
        )
        response.raise_for_status()
        features = response.json().get("features") or []
        if not features:
            return None
        first = features[0]
        lng, lat = first["geometry"]["coordinates"][:2]
        props = first.get("properties") or {}
        return GeocodeResult(
            address=str(props.get("label") or props.get("name") or query),
            lat=float(lat),
            lng=float(lng),
        )

    async def _nominatim(self, query: str) -> GeocodeResult:
        try:
            response = await self._client.get(
                f"{self._nominatim_base_url}/search",
                params={"q": query, "format": "jsonv2", "limit": 1, "countrycodes": "us"},
                headers={"Accept": "application/json", "User-Agent": self._user_agent},
                timeout=GEOCODE_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise GeocodeNoResults(f"no results for {query!r}") from e
        if not response.is_success:
            raise GeocodeNoResults(f"no results for {query!r}")

        try:
            results = response.json()
            first = results[0]
            return GeocodeResult(
                address=str(first.get("display_name") or query),
                lat=float(first["lat"]),
                lng=float(first["lon"]),
            )
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GeocodeNoResults(f"no results for {query!r}") from e
