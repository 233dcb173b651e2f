"""Exception hierarchy shared by the store, orchestrator and API client."""

from __future__ import annotations

from enum import Enum


class TroxideError(Exception):
    """Base class for every error raised by the tracker core."""


class NotFoundError(TroxideError, LookupError):
    """Requested entity is absent from the store."""


class InUseError(TroxideError):
    """A series cannot be deleted while a tracked entry references it."""

    def __init__(self, series_id: str):
        super().__init__(f"Series {series_id} is tracked; untrack it before deleting")
        self.series_id = series_id


class FetchErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    PARSE = "parse"


class FetchError(TroxideError):
    """The external catalog client could not supply a record."""

    kind: FetchErrorKind = FetchErrorKind.NETWORK

    def __init__(self, message: str, *, series_id: str | None = None):
        super().__init__(message)
        self.series_id = series_id


class RateLimitedError(FetchError):
    kind = FetchErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        *,
        series_id: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, series_id=series_id)
        self.retry_after = retry_after


class CatalogNotFoundError(FetchError):
    kind = FetchErrorKind.NOT_FOUND


class NetworkError(FetchError):
    kind = FetchErrorKind.NETWORK


class ParseError(FetchError):
    kind = FetchErrorKind.PARSE


class IncompatibleVersionError(TroxideError):
    """Snapshot schema version is not supported by this build."""

    def __init__(self, found: object, supported: int):
        super().__init__(
            f"Snapshot schema version {found!r} is not supported (max {supported})"
        )
        self.found = found
        self.supported = supported


class InvalidSnapshotError(TroxideError, ValueError):
    """Snapshot payload is structurally invalid."""


class StoreCorruptionError(TroxideError):
    """Persisted data could not be read back."""
