from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from app.errors import RoadPulseError
from health.health import record_feed_error, record_feed_success
from ingest.adapters import FeedAdapter
from store.db import Database
from store.hazards import write_batch


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one feed run.

    `total` counts the normalized records the feed produced; records dropped
    during normalization are reported only in `skipped`.
    """

    upserted: int
    deactivated: int
    fetch_ms: int
    total: int
    skipped: int = 0

    def to_dict(self) -> dict:
        return {
            "upserted": self.upserted,
            "deactivated": self.deactivated,
            "fetchMs": self.fetch_ms,
            "total": self.total,
            "skipped": self.skipped,
        }


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _error_code(e: Exception) -> str:
    return e.code if isinstance(e, RoadPulseError) else type(e).__name__


async def run_ingest(
    adapter: FeedAdapter, *, client: httpx.AsyncClient, db: Database
) -> IngestResult:
    """Fetch, normalize and persist one feed, then record its health.

    Any failure is recorded on the feed's status row and re-raised.
    """
    started = time.monotonic()
    try:
        batch = await adapter.collect(client)
        upserted, deactivated = write_batch(
            db,
            adapter.table,
            source=adapter.name,
            rows=batch.rows,
            full_snapshot=adapter.full_snapshot,
            now_iso=_utc_now_iso(),
        )
    except Exception as e:
        message = str(e) or type(e).__name__
        logger.warning("ingest %s failed [%s]: %s", adapter.name, _error_code(e), message)
        record_feed_error(db, feed_name=adapter.name, feed_url=adapter.url, error=message)
        raise

    total_ms = int((time.monotonic() - started) * 1000)
    result = IngestResult(
        upserted=upserted,
        deactivated=deactivated,
        fetch_ms=batch.fetch_ms,
        total=len(batch.rows),
        skipped=batch.skipped,
    )
    record_feed_success(
        db,
        feed_name=adapter.name,
        feed_url=adapter.url,
        record_count=upserted,
        fetch_ms=batch.fetch_ms,
    )
    logger.info(
        "ingest %s: %d records in %dms (fetch: %dms, deactivated: %d, skipped: %d)",
        adapter.name,
        upserted,
        total_ms,
        batch.fetch_ms,
        deactivated,
        batch.skipped,
    )
    return result
