"""Error taxonomy for station fetches and companion messaging."""

from __future__ import annotations


class FetchError(Exception):
    """Base class for everything the station fetcher can raise."""

    def __init__(self, message: str, *, station_id: str | None = None) -> None:
        super().__init__(message)
        self.station_id = station_id


class InvalidRequestError(FetchError):
    """Malformed station id or URL. A programmer error; never retried."""


class RateLimitedError(FetchError):
    """The API answered HTTP 429. Not retried by the fetcher."""

    def __init__(self, message: str, *, station_id: str | None = None, retry_after: float | None = None) -> None:
        super().__init__(message, station_id=station_id)
        self.retry_after = retry_after


class NetworkError(FetchError):
    """Transport failure or unexpected HTTP status, raised once retries are spent."""

    def __init__(self, message: str, *, station_id: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message, station_id=station_id)
        self.status_code = status_code


class DecodeError(FetchError):
    """Response body did not match the expected station shape."""


class OfflineError(FetchError):
    """No connectivity; raised before any network call is attempted."""


class CompanionError(Exception):
    """Base class for companion channel failures."""


class CompanionUnavailableError(CompanionError):
    """The paired device is not reachable."""


class CompanionTimeoutError(CompanionError):
    """The paired device did not reply within the transport timeout."""
