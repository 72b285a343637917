from __future__ import annotations


class RoadPulseError(Exception):
    code = "INTERNAL_ERROR"


class FetchError(RoadPulseError):
    """Network failure, timeout or non-2xx response from an upstream service."""

    code = "FETCH_ERROR"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(RoadPulseError):
    code = "PARSE_ERROR"


class GeocodeNoResults(RoadPulseError):
    code = "GEOCODE_NO_RESULTS"


class RouteNotFound(RoadPulseError):
    code = "ROUTE_NOT_FOUND"


class RateLimited(RoadPulseError):
    code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after: int = 60) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PersistenceError(RoadPulseError):
    code = "PERSISTENCE_ERROR"


class SweepInProgress(RoadPulseError):
    code = "SWEEP_IN_PROGRESS"
