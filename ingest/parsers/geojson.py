from __future__ import annotations

import json

from app.errors import ParseError


def load_json(data: bytes | str) -> object:
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"invalid JSON: {e}") from e


def parse_feature_collection(data: bytes | str) -> list[dict]:
    doc = load_json(data)
    if not isinstance(doc, dict):
        raise ParseError("expected a GeoJSON object")
    features = doc.get("features")
    if not isinstance(features, list):
        raise ParseError("GeoJSON document has no features array")
    return [f for f in features if isinstance(f, dict)]


def parse_wzdx_document(data: bytes | str) -> tuple[list[dict], str | None]:
    """Return `(features, version)` from a WZDx feed body.

    Accepts a FeatureCollection, a bare feature array and a JSON string that
    wraps either of those.
    """
    doc = load_json(data)
    if isinstance(doc, str):
        doc = load_json(doc)

    if isinstance(doc, list):
        return [f for f in doc if isinstance(f, dict)], None

    if not isinstance(doc, dict):
        raise ParseError("WZDx feed is neither an object nor an array")

    features = doc.get("features")
    if not isinstance(features, list):
        raise ParseError("WZDx feed has no features array")

    info = doc.get("road_event_feed_info") or doc.get("feed_info")
    version = None
    if isinstance(info, dict) and info.get("version") is not None:
        version = str(info["version"])
    return [f for f in features if isinstance(f, dict)], version
