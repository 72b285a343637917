from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType


# Road events and community reports use the RoadPulse scale, weather alerts
# use NWS CAP severities; both map onto one rank.
SEVERITY_RANK: Mapping[str, int] = MappingProxyType(
    {
        "CRITICAL": 4,
        "Extreme": 4,
        "WARNING": 3,
        "Severe": 3,
        "ADVISORY": 2,
        "Moderate": 2,
        "INFO": 1,
        "Minor": 1,
    }
)

_BUCKETS: Mapping[int, str] = MappingProxyType(
    {4: "critical", 3: "warning", 2: "advisory", 1: "info"}
)


def severity_rank(severity: str | None) -> int:
    if severity is None:
        return 1
    return SEVERITY_RANK.get(severity, 1)


def severity_bucket(severity: str | None) -> str:
    return _BUCKETS[severity_rank(severity)]
