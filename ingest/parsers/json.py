from __future__ import annotations

from app.errors import ParseError
from ingest.parsers.geojson import load_json


def parse_json_records(data: bytes | str) -> list[dict]:
    doc = load_json(data)
    if isinstance(doc, list):
        return [r for r in doc if isinstance(r, dict)]
    if isinstance(doc, dict):
        for key in ("facilities", "items", "data", "results"):
            value = doc.get(key)
            if isinstance(value, list):
                return [r for r in value if isinstance(r, dict)]
    raise ParseError("expected a JSON array of records")
