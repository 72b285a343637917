from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


@dataclass(frozen=True)
class FeedPackEntry:
    pack_id: str
    feed_id: str
    name: str
    url: str
    state: str
    refresh_minutes: int | None
    enabled: bool


def load_feed_pack_entries(feeds_dir: Path) -> dict[str, list[FeedPackEntry]]:
    packs: dict[str, list[FeedPackEntry]] = {}
    if not feeds_dir.exists():
        return packs

    for path in sorted(feeds_dir.glob("*.yaml")):
        pack_id = path.stem
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        if raw is None:
            packs[pack_id] = []
            continue
        if not isinstance(raw, list):
            raise ValueError(f"invalid feed pack: {path}")

        entries: list[FeedPackEntry] = []
        seen: set[str] = set()
        for entry in raw:
            if not isinstance(entry, dict):
                raise ValueError(f"invalid feed entry in: {path}")
            feed_id = str(entry["id"])
            if feed_id in seen:
                raise ValueError(f"duplicate feed id {feed_id!r} in: {path}")
            seen.add(feed_id)
            refresh = entry.get("refresh_minutes")
            entries.append(
                FeedPackEntry(
                    pack_id=pack_id,
                    feed_id=feed_id,
                    name=str(entry.get("name") or feed_id),
                    url=str(entry["url"]),
                    state=str(entry["state"]).upper()[:2],
                    refresh_minutes=(int(refresh) if refresh is not None else None),
                    enabled=bool(entry.get("enabled", True)),
                )
            )

        packs[pack_id] = entries

    return packs


def iter_feed_entries(feeds_dir: Path) -> list[FeedPackEntry]:
    entries: list[FeedPackEntry] = []
    for pack in load_feed_pack_entries(feeds_dir).values():
        entries.extend(pack)
    return entries
