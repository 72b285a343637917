from __future__ import annotations

from store.db import Database


def get_config(db: Database, key: str) -> str | None:
    with db.lock:
        row = db.conn.execute(
            "SELECT value FROM app_config WHERE key = ? LIMIT 1;", (key,)
        ).fetchone()
    if row is None:
        return None
    return str(row["value"])


def set_config(db: Database, key: str, value: str) -> None:
    with db.lock:
        db.conn.execute(
            """
            INSERT INTO app_config(key, value)
            VALUES(?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value;
            """,
            (key, value),
        )
        db.conn.commit()
