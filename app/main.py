from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Literal

import httpx
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.errors import (
    GeocodeNoResults,
    RateLimited,
    RoadPulseError,
    RouteNotFound,
    SweepInProgress,
)
from app.log import configure_logging
from app.settings import Settings
from geo.corridor import CorridorBuilder, Waypoint
from geo.geocode import Geocoder
from geo.matcher import match, parking_along_route
from geo.routing import RouteProvider
from health.health import ensure_feeds, list_feed_status, update_feed_config
from ingest.adapters import build_registry
from ingest.scheduler import IngestionScheduler
from ingest.zones import ZoneResolver
from store.cache import TtlCache
from store.db import Database, close_database, open_database
from store.reports import create_report, vote_on_report


logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _error(message: str, code: str, status_code: int, **extra: object) -> JSONResponse:
    return JSONResponse({"error": message, "code": code, **extra}, status_code=status_code)


class IngestRequest(BaseModel):
    feed: str


class FeedConfigUpdate(BaseModel):
    isEnabled: bool | None = None
    refreshIntervalMinutes: int | None = Field(default=None, ge=1)


class IntervalUpdate(BaseModel):
    minutes: int = Field(ge=1)


class RouteCheckRequest(BaseModel):
    originAddress: str = ""
    originLat: float | None = None
    originLng: float | None = None
    destinationAddress: str = ""
    destinationLat: float | None = None
    destinationLng: float | None = None
    corridorMiles: float | None = None
    includeParking: bool = False


class ReportCreate(BaseModel):
    type: str
    title: str
    lat: float
    lng: float
    severity: str = "INFO"
    description: str | None = None
    locationDescription: str | None = None
    routeName: str | None = None
    state: str | None = None


class VoteRequest(BaseModel):
    vote: Literal["up", "down"]


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or Settings()
        configure_logging(cfg.log_level)
        db = open_database(cfg.db_path)
        cache = TtlCache(db)
        cache.purge_expired()
        client = httpx.AsyncClient(follow_redirects=True, transport=transport)

        zones = ZoneResolver(
            client,
            cache,
            user_agent=cfg.user_agent,
            concurrency=cfg.nws_zone_concurrency,
            ttl_seconds=cfg.zone_cache_ttl_seconds,
        )
        registry = build_registry(cfg, zones=zones)
        ensure_feeds(
            db,
            [a.definition() for a in registry.values()],
            default_interval_minutes=cfg.feed_default_interval_minutes,
        )
        scheduler = IngestionScheduler(
            db=db,
            client=client,
            registry=registry,
            default_interval_minutes=cfg.feed_default_interval_minutes,
        )
        geocoder = Geocoder(
            client,
            cache,
            user_agent=cfg.user_agent,
            ors_api_key=cfg.ors_api_key,
            ors_base_url=cfg.ors_base_url,
            nominatim_base_url=cfg.nominatim_base_url,
            ttl_seconds=cfg.geocode_cache_ttl_seconds,
        )
        router = RouteProvider(
            client,
            cache,
            api_key=cfg.ors_api_key,
            base_url=cfg.ors_base_url,
            user_agent=cfg.user_agent,
            ttl_seconds=cfg.route_cache_ttl_seconds,
        )

        app.state.settings = cfg
        app.state.db = db
        app.state.registry = registry
        app.state.scheduler = scheduler
        app.state.corridors = CorridorBuilder(geocoder, router)

        if cfg.scheduler_autostart:
            scheduler.start()
        logger.info("roadpulse started with %d feeds", len(registry))
        try:
            yield
        finally:
            await scheduler.stop()
            await client.aclose()
            close_database(db)

    app = FastAPI(title="RoadPulse", lifespan=lifespan)
    _register_routes(app)
    return app


def _sweep_response(report) -> dict:
    body = report.to_dict()
    body["timestamp"] = _utc_now_iso()
    return body


def _register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    def api_health(request: Request) -> JSONResponse:
        scheduler: IngestionScheduler = request.app.state.scheduler
        return JSONResponse({"status": "ok", "scheduler": scheduler.state.value})

    @app.post("/api/admin/ingest")
    async def api_admin_ingest(request: Request, body: IngestRequest) -> JSONResponse:
        scheduler: IngestionScheduler = request.app.state.scheduler
        registry = request.app.state.registry

        try:
            if body.feed == "all":
                report = await scheduler.trigger()
                return JSONResponse(_sweep_response(report))

            if body.feed not in registry:
                return _error(
                    f"Unknown feed: {body.feed}",
                    "UNKNOWN_FEED",
                    400,
                    validFeeds=["all", *sorted(registry)],
                )
            result = await scheduler.run_feed(body.feed)
        except SweepInProgress as e:
            return _error(str(e), e.code, 409)
        except Exception as e:
            return _error("Ingestion failed", "INGEST_ERROR", 500, details=str(e))

        return JSONResponse(
            {"feed": body.feed, "result": result.to_dict(), "timestamp": _utc_now_iso()}
        )

    @app.api_route("/api/cron/ingest", methods=["GET", "POST"])
    async def api_cron_ingest(
        request: Request,
        x_cron_secret: str | None = Header(default=None),
    ) -> JSONResponse:
        settings: Settings = request.app.state.settings
        expected = settings.cron_secret
        if not expected or not x_cron_secret or not secrets.compare_digest(
            x_cron_secret, expected
        ):
            return _error("Unauthorized", "UNAUTHORIZED", 401)

        scheduler: IngestionScheduler = request.app.state.scheduler
        try:
            report = await scheduler.trigger()
        except SweepInProgress as e:
            return _error(str(e), e.code, 409)
        return JSONResponse(_sweep_response(report))

    @app.get("/api/feeds")
    def api_feeds(request: Request) -> JSONResponse:
        settings: Settings = request.app.state.settings
        db: Database = request.app.state.db
        return JSONResponse(
            list_feed_status(db, stale_after_minutes=settings.feed_stale_after_minutes)
        )

    @app.patch("/api/feeds/{name}")
    def api_feed_update(request: Request, name: str, body: FeedConfigUpdate) -> JSONResponse:
        db: Database = request.app.state.db
        settings: Settings = request.app.state.settings
        found = update_feed_config(
            db,
            name,
            is_enabled=body.isEnabled,
            refresh_interval_minutes=body.refreshIntervalMinutes,
        )
        if not found:
            return _error(f"Unknown feed: {name}", "NOT_FOUND", 404)
        feeds = list_feed_status(db, stale_after_minutes=settings.feed_stale_after_minutes)
        return JSONResponse(next(f for f in feeds if f["feedName"] == name))

    @app.get("/api/scheduler")
    def api_scheduler(request: Request) -> JSONResponse:
        return JSONResponse(request.app.state.scheduler.status())

    @app.post("/api/scheduler/pause")
    async def api_scheduler_pause(request: Request) -> JSONResponse:
        scheduler: IngestionScheduler = request.app.state.scheduler
        scheduler.pause()
        return JSONResponse(scheduler.status())

    @app.post("/api/scheduler/resume")
    async def api_scheduler_resume(request: Request) -> JSONResponse:
        scheduler: IngestionScheduler = request.app.state.scheduler
        scheduler.resume()
        return JSONResponse(scheduler.status())

    @app.post("/api/scheduler/trigger")
    async def api_scheduler_trigger(request: Request) -> JSONResponse:
        scheduler: IngestionScheduler = request.app.state.scheduler
        try:
            report = await scheduler.trigger()
        except SweepInProgress as e:
            return _error(str(e), e.code, 409)
        return JSONResponse(_sweep_response(report))

    @app.post("/api/scheduler/interval")
    async def api_scheduler_interval(request: Request, body: IntervalUpdate) -> JSONResponse:
        scheduler: IngestionScheduler = request.app.state.scheduler
        scheduler.set_interval(body.minutes)
        return JSONResponse(scheduler.status())

    @app.post("/api/route/check")
    async def api_route_check(request: Request, body: RouteCheckRequest) -> JSONResponse:
        return await _route_check(request, body)

    @app.get("/api/route/check")
    async def api_route_check_get(
        request: Request,
        origin: str = "",
        dest: str = "",
        miles: float | None = None,
        origin_lat: float | None = None,
        origin_lng: float | None = None,
        dest_lat: float | None = None,
        dest_lng: float | None = None,
        include_parking: bool = False,
    ) -> JSONResponse:
        body = RouteCheckRequest(
            originAddress=origin,
            originLat=origin_lat,
            originLng=origin_lng,
            destinationAddress=dest,
            destinationLat=dest_lat,
            destinationLng=dest_lng,
            corridorMiles=miles,
            includeParking=include_parking,
        )
        return await _route_check(request, body)

    @app.post("/api/reports")
    def api_create_report(
        request: Request,
        body: ReportCreate,
        x_user_id: str | None = Header(default=None),
    ) -> JSONResponse:
        if not x_user_id:
            return _error("Unauthorized", "UNAUTHORIZED", 401)
        db: Database = request.app.state.db
        try:
            report = create_report(
                db,
                user_id=x_user_id,
                report_type=body.type,
                title=body.title,
                lat=body.lat,
                lng=body.lng,
                severity=body.severity,
                description=body.description,
                location_description=body.locationDescription,
                route_name=body.routeName,
                state=body.state,
            )
        except ValueError as e:
            return _error(str(e), "INVALID_REPORT", 400)
        return JSONResponse(report, status_code=201)

    @app.post("/api/reports/{report_id}/vote")
    def api_vote_report(
        request: Request,
        report_id: str,
        body: VoteRequest,
        x_user_id: str | None = Header(default=None),
    ) -> JSONResponse:
        if not x_user_id:
            return _error("Unauthorized", "UNAUTHORIZED", 401)
        db: Database = request.app.state.db
        try:
            counts = vote_on_report(db, report_id=report_id, user_id=x_user_id, vote=body.vote)
        except LookupError:
            return _error("Report not found", "NOT_FOUND", 404)
        return JSONResponse(counts)


def _has_waypoint(address: str, lat: float | None, lng: float | None) -> bool:
    return bool(address.strip()) or (lat is not None and lng is not None)


async def _route_check(request: Request, body: RouteCheckRequest) -> JSONResponse:
    if not _has_waypoint(body.originAddress, body.originLat, body.originLng) or not (
        _has_waypoint(body.destinationAddress, body.destinationLat, body.destinationLng)
    ):
        return _error("Origin and destination are required", "MISSING_INPUTS", 400)

    builder: CorridorBuilder = request.app.state.corridors
    db: Database = request.app.state.db
    try:
        corridor = await builder.build(
            Waypoint(body.originAddress.strip(), body.originLat, body.originLng),
            Waypoint(
                body.destinationAddress.strip(), body.destinationLat, body.destinationLng
            ),
            body.corridorMiles,
        )
        matched = match(db, corridor)
        parking = parking_along_route(db, corridor) if body.includeParking else None
    except GeocodeNoResults as e:
        return _error(str(e) or "Address not found", e.code, 404)
    except RouteNotFound as e:
        return _error(str(e) or "No route found", e.code, 404)
    except RateLimited as e:
        return JSONResponse(
            {"error": str(e), "code": e.code, "retryAfter": e.retry_after},
            status_code=429,
            headers={"Retry-After": str(e.retry_after)},
        )
    except Exception as e:
        code = e.code if isinstance(e, RoadPulseError) else type(e).__name__
        logger.exception("route check failed [%s]", code)
        return _error("Route check failed", "INTERNAL_ERROR", 500)

    payload = {
        "route": corridor.route_view(),
        "hazards": matched["hazards"],
        "summary": matched["summary"],
        "checkedAt": _utc_now_iso(),
    }
    if parking is not None:
        payload["parking"] = parking
    return JSONResponse(payload)


app = create_app()
