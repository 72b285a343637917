from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import httpx

from app.errors import FetchError, RateLimited, RoadPulseError, RouteNotFound
from store.cache import TtlCache


logger = logging.getLogger(__name__)

ROUTE_TIMEOUT = httpx.Timeout(connect=5.0, read=20.0, write=5.0, pool=5.0)


@dataclass(frozen=True)
class RouteResult:
    geometry: dict
    distance_meters: float
    duration_seconds: float


def _route_cache_key(o_lat: float, o_lng: float, d_lat: float, d_lng: float) -> str:
    return f"route:hgv:{o_lat:.4f},{o_lng:.4f}:{d_lat:.4f},{d_lng:.4f}"


class RouteProvider:
    """Heavy-goods-vehicle routes from the OpenRouteService directions API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: TtlCache,
        *,
        api_key: str | None,
        base_url: str = "https://api.openrouteservice.org",
        user_agent: str,
        ttl_seconds: int = 300,
    ) -> None:
        self._client = client
        self._cache = cache
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._user_agent = user_agent
        self._ttl_seconds = ttl_seconds

    async def fetch_route(
        self, o_lat: float, o_lng: float, d_lat: float, d_lng: float
    ) -> RouteResult:
        key = _route_cache_key(o_lat, o_lng, d_lat, d_lng)
        cached = self._cache.get(key)
        if cached is not None:
            data = json.loads(cached)
            return RouteResult(
                geometry=data["geometry"],
                distance_meters=data["distanceMeters"],
                duration_seconds=data["durationSeconds"],
            )

        if not self._api_key:
            raise RoadPulseError("OPENROUTESERVICE_API_KEY is not set")

        try:
            response = await self._client.post(
                f"{self._base_url}/v2/directions/driving-hgv/geojson",
                json={"coordinates": [[o_lng, o_lat], [d_lng, d_lat]]},
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Accept": "application/json, application/geo+json",
                    "User-Agent": self._user_agent,
                },
                timeout=ROUTE_TIMEOUT,
            )
        except httpx.TimeoutException as e:
            raise FetchError("timeout fetching route") from e
        except httpx.RequestError as e:
            raise FetchError(f"route request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimited("routing provider rate limit reached", retry_after=60)

        if not response.is_success:
            try:
                message = str(response.json().get("error"))
            except (ValueError, AttributeError):
                message = ""
            if "route" in message.lower():
                raise RouteNotFound(message)
            raise FetchError(
                f"directions error {response.status_code}: {message}".rstrip(": "),
                status_code=response.status_code,
            )

        features = response.json().get("features") or []
        if not features:
            raise RouteNotFound("no route between the given points")

        feature = features[0]
        summary = (feature.get("properties") or {}).get("summary") or {}
        result = RouteResult(
            geometry=feature["geometry"],
            distance_meters=float(summary.get("distance") or 0.0),
            duration_seconds=float(summary.get("duration") or 0.0),
        )
        self._cache.set(
            key,
            json.dumps(
                {
                    "geometry": result.geometry,
                    "distanceMeters": result.distance_meters,
                    "durationSeconds": result.duration_seconds,
                }
            ),
            self._ttl_seconds,
        )
        return result
