from __future__ import annotations

import logging
import sqlite3
import time

from store.db import Database


logger = logging.getLogger(__name__)


class TtlCache:
    """Best-effort key/value cache kept in the `cache_entries` table.

    Read and write failures are logged and reported as a miss so callers
    always fall back to computing the value directly.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, key: str) -> str | None:
        try:
            with self._db.lock:
                row = self._db.conn.execute(
                    "SELECT value, expires_at FROM cache_entries WHERE key = ?;",
                    (key,),
                ).fetchone()
        except sqlite3.Error as e:
            logger.debug("cache read failed for %s: %s", key, e)
            return None
        if row is None:
            return None
        if float(row["expires_at"]) <= time.time():
            return None
        return str(row["value"])

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at = time.time() + ttl_seconds
        try:
            with self._db.lock:
                self._db.conn.execute(
                    """
                    INSERT INTO cache_entries(key, value, expires_at)
                    VALUES(?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                      value = excluded.value,
                      expires_at = excluded.expires_at;
                    """,
                    (key, value, expires_at),
                )
                self._db.conn.commit()
        except sqlite3.Error as e:
            logger.debug("cache write failed for %s: %s", key, e)

    def purge_expired(self) -> int:
        try:
            with self._db.lock:
                cur = self._db.conn.execute(
                    "DELETE FROM cache_entries WHERE expires_at <= ?;", (time.time(),)
                )
                self._db.conn.commit()
        except sqlite3.Error as e:
            logger.debug("cache purge failed: %s", e)
            return 0
        return cur.rowcount
