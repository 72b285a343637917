from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

import httpx

from app.settings import Settings
from health.health import FeedDefinition
from ingest.feed_packs import iter_feed_entries
from ingest.fetch import fetch
from ingest.parsers.geojson import parse_feature_collection, parse_wzdx_document
from ingest.parsers.json import parse_json_records
from ingest.zones import ZoneResolver, merge_to_multipolygon
from normalize.normalize import (
    is_road_relevant_alert,
    merge_tpims,
    normalize_nws_alert,
    normalize_tpims_facility,
    normalize_tpims_status,
    normalize_wzdx_feature,
)
from store.hazards import PARKING_FACILITIES, ROAD_EVENTS, WEATHER_ALERTS, HazardTable


logger = logging.getLogger(__name__)

# Per-record problems that skip the record rather than fail the run.
_RECORD_ERRORS = (KeyError, TypeError, ValueError, IndexError)


@dataclass
class NormalizedBatch:
    rows: list[dict] = field(default_factory=list)
    skipped: int = 0
    fetch_ms: int = 0


class FeedAdapter(ABC):
    """One external source: fetch, validate and normalize a full batch.

    Writing the batch and updating feed health is left to the ingestion
    engine so every source shares the same persistence semantics.
    """

    name: str
    url: str
    table: HazardTable
    full_snapshot: bool = True
    enabled: bool = True
    refresh_interval_minutes: int | None = None

    @abstractmethod
    async def collect(self, client: httpx.AsyncClient) -> NormalizedBatch: ...

    def definition(self) -> FeedDefinition:
        return FeedDefinition(
            name=self.name,
            url=self.url,
            enabled=self.enabled,
            refresh_interval_minutes=self.refresh_interval_minutes,
        )


class NwsAlertsAdapter(FeedAdapter):
    name = "nws-alerts"
    table = WEATHER_ALERTS

    def __init__(self, *, url: str, user_agent: str, zones: ZoneResolver) -> None:
        self.url = url
        self._user_agent = user_agent
        self._zones = zones

    async def collect(self, client: httpx.AsyncClient) -> NormalizedBatch:
        body, fetch_ms = await fetch(
            client, url=self.url, user_agent=self._user_agent, accept="application/geo+json"
        )
        features = parse_feature_collection(body)
        relevant = [f for f in features if is_road_relevant_alert(f)]

        zone_refs = [
            str(z)
            for f in relevant
            if not f.get("geometry")
            for z in ((f.get("properties") or {}).get("affectedZones") or [])
        ]
        zone_geoms = await self._zones.resolve(zone_refs) if zone_refs else {}

        batch = NormalizedBatch(fetch_ms=fetch_ms)
        for feature in relevant:
            geometry = feature.get("geometry")
            if not geometry:
                refs = (feature.get("properties") or {}).get("affectedZones") or []
                geometry = merge_to_multipolygon([zone_geoms.get(str(r)) for r in refs])
            try:
                batch.rows.append(normalize_nws_alert(record=feature, geometry=geometry))
            except _RECORD_ERRORS as e:
                batch.skipped += 1
                logger.debug("skipping NWS alert %s: %s", feature.get("id"), e)
        return batch


class WzdxAdapter(FeedAdapter):
    table = ROAD_EVENTS

    def __init__(
        self,
        *,
        name: str,
        url: str,
        state: str,
        user_agent: str,
        enabled: bool = True,
        refresh_interval_minutes: int | None = None,
    ) -> None:
        self.name = name
        self.url = url
        self.state = state
        self.enabled = enabled
        self.refresh_interval_minutes = refresh_interval_minutes
        self._user_agent = user_agent

    async def collect(self, client: httpx.AsyncClient) -> NormalizedBatch:
        # geo+json in Accept gets 406 from some state servers
        body, fetch_ms = await fetch(
            client, url=self.url, user_agent=self._user_agent, accept="application/json"
        )
        features, version = parse_wzdx_document(body)

        batch = NormalizedBatch(fetch_ms=fetch_ms)
        for feature in features:
            try:
                row = normalize_wzdx_feature(
                    state=self.state,
                    feed_url=self.url,
                    record=feature,
                    version=version,
                )
            except _RECORD_ERRORS as e:
                batch.skipped += 1
                logger.debug("skipping %s feature %s: %s", self.name, feature.get("id"), e)
                continue
            if row is None:
                batch.skipped += 1
                continue
            batch.rows.append(row)
        return batch


class TpimsParkingAdapter(FeedAdapter):
    name = "tpims-parking"
    table = PARKING_FACILITIES

    def __init__(self, *, static_url: str, dynamic_url: str, user_agent: str) -> None:
        self.url = static_url
        self.dynamic_url = dynamic_url
        self._user_agent = user_agent

    async def collect(self, client: httpx.AsyncClient) -> NormalizedBatch:
        static_body, static_ms = await fetch(
            client,
            url=self.url,
            user_agent=self._user_agent,
            timeout=httpx.Timeout(connect=5.0, read=30.0, write=5.0, pool=5.0),
        )
        dynamic_body, dynamic_ms = await fetch(
            client, url=self.dynamic_url, user_agent=self._user_agent
        )
        facilities = parse_json_records(static_body)
        statuses = parse_json_records(dynamic_body)

        status_by_id: dict[str, dict] = {}
        for record in statuses:
            try:
                status = normalize_tpims_status(record)
            except _RECORD_ERRORS:
                continue
            status_by_id[status["source_facility_id"]] = status

        batch = NormalizedBatch(fetch_ms=static_ms + dynamic_ms)
        for record in facilities:
            try:
                facility = normalize_tpims_facility(record)
                batch.rows.append(
                    merge_tpims(facility, status_by_id.get(facility["source_facility_id"]))
                )
            except _RECORD_ERRORS as e:
                batch.skipped += 1
                logger.debug("skipping TPIMS facility: %s", e)
        return batch


def wzdx_adapters(feeds_dir: Path, *, user_agent: str) -> list[WzdxAdapter]:
    return [
        WzdxAdapter(
            name=entry.feed_id,
            url=entry.url,
            state=entry.state,
            user_agent=user_agent,
            enabled=entry.enabled,
            refresh_interval_minutes=entry.refresh_minutes,
        )
        for entry in iter_feed_entries(feeds_dir)
    ]


def build_registry(
    settings: Settings, *, zones: ZoneResolver
) -> Mapping[str, FeedAdapter]:
    adapters: list[FeedAdapter] = [
        NwsAlertsAdapter(
            url=settings.nws_alerts_url, user_agent=settings.user_agent, zones=zones
        )
    ]
    adapters.extend(wzdx_adapters(settings.feeds_dir, user_agent=settings.user_agent))
    if settings.tpims_static_url and settings.tpims_dynamic_url:
        adapters.append(
            TpimsParkingAdapter(
                static_url=settings.tpims_static_url,
                dynamic_url=settings.tpims_dynamic_url,
                user_agent=settings.user_agent,
            )
        )
    else:
        logger.info("TPIMS feed URLs not configured; parking feed disabled")

    registry: dict[str, FeedAdapter] = {}
    for adapter in adapters:
        if adapter.name in registry:
            raise ValueError(f"duplicate feed name: {adapter.name}")
        registry[adapter.name] = adapter
    return MappingProxyType(registry)
