from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

import httpx

from app.errors import PersistenceError, RoadPulseError, SweepInProgress
from health.health import last_attempt_at, list_feed_rows
from ingest.adapters import FeedAdapter
from ingest.engine import IngestResult, run_ingest
from store.config import get_config, set_config
from store.db import Database


logger = logging.getLogger(__name__)

PAUSED_KEY = "scheduler_paused"
INTERVAL_KEY = "scheduler_interval_minutes"


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass
class FeedRunResult:
    feed: str
    result: IngestResult | None = None
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict:
        out: dict = {"feed": self.feed}
        if self.result is not None:
            out["result"] = self.result.to_dict()
        if self.error is not None:
            out["error"] = self.error
            out["code"] = self.error_code
        return out


@dataclass
class SweepReport:
    started_at: datetime
    finished_at: datetime | None = None
    results: list[FeedRunResult] = field(default_factory=list)

    @property
    def totals(self) -> dict:
        ok = [r.result for r in self.results if r.result is not None]
        return {
            "feeds": len(self.results),
            "succeeded": len(ok),
            "failed": len(self.results) - len(ok),
            "upserted": sum(r.upserted for r in ok),
            "deactivated": sum(r.deactivated for r in ok),
            "fetchMs": sum(r.fetch_ms for r in ok),
        }

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "totals": self.totals,
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
        }


class IngestionScheduler:
    """Runs every registered feed adapter on a timer.

    At most one sweep or single-feed run is in flight at a time. Pausing only
    cancels the pending timer; a sweep already running completes.
    """

    def __init__(
        self,
        *,
        db: Database,
        client: httpx.AsyncClient,
        registry: Mapping[str, FeedAdapter],
        default_interval_minutes: int = 5,
    ) -> None:
        self._db = db
        self._client = client
        self._registry = registry
        self._default_interval = default_interval_minutes
        self._interval = default_interval_minutes
        self._state = SchedulerState.STOPPED
        self._run_lock = asyncio.Lock()
        self._timer: asyncio.Task | None = None
        self._sweeps: set[asyncio.Task] = set()
        self._next_run_at: datetime | None = None
        self._last_report: SweepReport | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def interval_minutes(self) -> int:
        return self._interval

    @property
    def is_running_sweep(self) -> bool:
        return self._run_lock.locked()

    @property
    def last_report(self) -> SweepReport | None:
        return self._last_report

    def start(self) -> None:
        if self._state is not SchedulerState.STOPPED:
            return
        stored = get_config(self._db, INTERVAL_KEY)
        if stored is not None:
            try:
                self._interval = max(1, int(stored))
            except ValueError:
                logger.warning("ignoring invalid stored interval %r", stored)
                self._interval = self._default_interval
        if get_config(self._db, PAUSED_KEY) == "1":
            self._state = SchedulerState.PAUSED
            logger.info("scheduler started paused (interval %d min)", self._interval)
            return
        self._arm()
        self._state = SchedulerState.RUNNING
        logger.info("scheduler started (interval %d min)", self._interval)

    def pause(self) -> None:
        set_config(self._db, PAUSED_KEY, "1")
        self._disarm()
        if self._state is not SchedulerState.STOPPED:
            self._state = SchedulerState.PAUSED
        logger.info("scheduler paused")

    def resume(self) -> None:
        set_config(self._db, PAUSED_KEY, "0")
        if self._state is SchedulerState.STOPPED:
            return
        self._arm()
        self._state = SchedulerState.RUNNING
        logger.info("scheduler resumed (interval %d min)", self._interval)

    def set_interval(self, minutes: int) -> None:
        if minutes < 1:
            raise ValueError("interval must be at least 1 minute")
        self._interval = int(minutes)
        set_config(self._db, INTERVAL_KEY, str(self._interval))
        logger.info("scheduler interval set to %d min", self._interval)

    async def trigger(self) -> SweepReport:
        if self._run_lock.locked():
            raise SweepInProgress("an ingestion run is already in progress")
        return await self.run_sweep(only_due=False)

    async def stop(self) -> None:
        self._disarm()
        pending = list(self._sweeps)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        # A manual trigger or single-feed run may still hold the lock.
        async with self._run_lock:
            self._state = SchedulerState.STOPPED
        logger.info("scheduler stopped")

    async def run_feed(self, name: str) -> IngestResult:
        adapter = self._registry[name]
        if self._run_lock.locked():
            raise SweepInProgress("an ingestion run is already in progress")
        async with self._run_lock:
            return await run_ingest(adapter, client=self._client, db=self._db)

    async def run_sweep(self, *, only_due: bool) -> SweepReport:
        async with self._run_lock:
            report = await self._sweep(only_due=only_due)
        self._last_report = report
        return report

    def status(self) -> dict:
        last = self._last_report
        return {
            "state": self._state.value,
            "intervalMinutes": self._interval,
            "nextRunAt": _iso(self._next_run_at)
            if self._state is SchedulerState.RUNNING
            else None,
            "sweepInProgress": self.is_running_sweep,
            "lastRunAt": _iso(last.started_at) if last else None,
            "lastTotals": last.totals if last else None,
            "feeds": sorted(self._registry),
        }

    def _feed_rows(self) -> dict[str, dict]:
        try:
            return {row["feed_name"]: row for row in list_feed_rows(self._db)}
        except sqlite3.Error as e:
            raise PersistenceError(f"feed_status unreadable: {e}") from e

    def _is_due(self, row: dict | None, now: datetime) -> bool:
        if row is None:
            return True
        attempted = last_attempt_at(row)
        if attempted is None:
            return True
        minutes = int(row.get("refresh_interval_minutes") or self._default_interval)
        return now - attempted >= timedelta(minutes=minutes)

    async def _sweep(self, *, only_due: bool) -> SweepReport:
        report = SweepReport(started_at=_utc_now())
        rows = self._feed_rows()
        for name, adapter in self._registry.items():
            row = rows.get(name)
            if row is not None and not row["is_enabled"]:
                continue
            if only_due and not self._is_due(row, _utc_now()):
                continue
            try:
                result = await run_ingest(adapter, client=self._client, db=self._db)
            except Exception as e:
                code = e.code if isinstance(e, RoadPulseError) else "INTERNAL_ERROR"
                report.results.append(
                    FeedRunResult(feed=name, error=str(e) or type(e).__name__, error_code=code)
                )
                continue
            report.results.append(FeedRunResult(feed=name, result=result))
        report.finished_at = _utc_now()
        totals = report.totals
        logger.info(
            "sweep finished: %d feeds, %d failed, %d upserted, %d deactivated",
            totals["feeds"],
            totals["failed"],
            totals["upserted"],
            totals["deactivated"],
        )
        return report

    def _arm(self) -> None:
        self._disarm()
        self._next_run_at = _utc_now() + timedelta(seconds=self._interval_seconds())
        self._timer = asyncio.create_task(self._timer_loop())

    def _disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._next_run_at = None

    async def _timer_loop(self) -> None:
        while True:
            delay = self._interval_seconds()
            self._next_run_at = _utc_now() + timedelta(seconds=delay)
            await asyncio.sleep(delay)
            if self._run_lock.locked():
                logger.info("skipping scheduled sweep: previous run still in progress")
                continue
            # Separate task so pausing cancels only the timer, not the sweep.
            task = asyncio.create_task(self._scheduled_sweep())
            self._sweeps.add(task)
            task.add_done_callback(self._sweeps.discard)

    def _interval_seconds(self) -> float:
        return self._interval * 60

    async def _scheduled_sweep(self) -> None:
        try:
            await self.run_sweep(only_due=True)
        except PersistenceError as e:
            logger.error("scheduled sweep aborted: %s", e)
