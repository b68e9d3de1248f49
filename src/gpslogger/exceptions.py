"""Custom exception hierarchy for gpslogger."""

from __future__ import annotations

from typing import Any


class GpsLoggerError(Exception):
    """Base exception for all gpslogger errors."""


class GpsLoggerConfigError(GpsLoggerError):
    """Invalid or missing configuration."""


class InvalidCoordinateError(GpsLoggerError, ValueError):
    """Latitude or longitude outside the WGS84 range.

    Raised before anything is submitted to a store, so a rejected fix
    never leaves a partial write behind.
    """

    def __init__(self, message: str, *, latitude: Any = None, longitude: Any = None) -> None:
        self.latitude = latitude
        self.longitude = longitude
        super().__init__(message)


class MalformedRecordError(GpsLoggerError):
    """A stored document could not be decoded into a location record."""

    def __init__(self, message: str, *, document: Any = None) -> None:
        self.document = document
        super().__init__(message)


class TransportError(GpsLoggerError):
    """HTTP-level failure (network, non-2xx, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class StoreError(GpsLoggerError):
    """A location store operation failed."""

    def __init__(self, message: str, *, operation: str = "") -> None:
        self.operation = operation
        super().__init__(message)


class StoreUnavailableError(StoreError):
    """The store could not be reached or rejected our credentials."""


class NotFoundError(StoreError):
    """No record exists with the requested id."""

    def __init__(self, message: str, *, record_id: str = "", operation: str = "delete") -> None:
        self.record_id = record_id
        super().__init__(message, operation=operation)


class AlreadySubscribedError(StoreError):
    """A change feed is already active.

    Also raised by :meth:`gpslogger.SyncEngine.start` when the engine is
    already streaming.
    """


class SubscriptionFailedError(StoreError):
    """The store could not establish the realtime change feed."""
