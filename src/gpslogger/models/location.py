"""Location fix and record models."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import Field, ValidationError, field_validator

from gpslogger._constants import LATITUDE_RANGE, LONGITUDE_RANGE
from gpslogger.exceptions import InvalidCoordinateError, MalformedRecordError
from gpslogger.models._base import GpsLoggerBaseModel, StoreTimestamp, ensure_utc


def _range_problem(name: str, value: Any, bounds: tuple[float, float]) -> str | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return f"{name} must be a number, got {value!r}"
    low, high = bounds
    # NaN fails both comparisons.
    if not low <= value <= high:
        return f"{name} must be between {low:g} and {high:g}, got {value}"
    return None


def ensure_valid_coordinate(latitude: Any, longitude: Any) -> tuple[float, float]:
    """Return ``(latitude, longitude)`` as floats or raise :class:`InvalidCoordinateError`."""
    problem = _range_problem("latitude", latitude, LATITUDE_RANGE) or _range_problem(
        "longitude", longitude, LONGITUDE_RANGE
    )
    if problem is not None:
        raise InvalidCoordinateError(problem, latitude=latitude, longitude=longitude)
    return float(latitude), float(longitude)


class LocationFix(GpsLoggerBaseModel):
    """A raw reading from a location source.

    Bounds are not enforced here: sources may report garbage and the
    engine is the one that rejects it.
    """

    latitude: float
    longitude: float
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("timestamp")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class LocationRecord(GpsLoggerBaseModel):
    """A location stored in (or on its way to) the document store.

    Parameters
    ----------
    id : str or None
        Store-assigned identifier. ``None`` while the write is pending.
    latitude : float
        Latitude in degrees, ``-90..90``.
    longitude : float
        Longitude in degrees, ``-180..180``.
    created_at : datetime
        Server timestamp once acknowledged; the client timestamp while
        pending.
    sequence : int
        Store insertion order, used to break ``created_at`` ties.
    client_ref : str or None
        Token chosen by the writing client and echoed by the store.
    """

    id: str | None = None
    latitude: float
    longitude: float
    created_at: StoreTimestamp
    sequence: int = 0
    client_ref: str | None = None

    @field_validator("latitude")
    @classmethod
    def _check_latitude(cls, value: float) -> float:
        problem = _range_problem("latitude", value, LATITUDE_RANGE)
        if problem is not None:
            raise ValueError(problem)
        return value

    @field_validator("longitude")
    @classmethod
    def _check_longitude(cls, value: float) -> float:
        problem = _range_problem("longitude", value, LONGITUDE_RANGE)
        if problem is not None:
            raise ValueError(problem)
        return value

    @property
    def pending(self) -> bool:
        """Whether the store has not acknowledged this record yet."""
        return self.id is None

    @classmethod
    def from_document(
        cls,
        document: Mapping[str, Any],
        *,
        record_id: str | None = None,
        sequence: int | None = None,
    ) -> LocationRecord:
        """Strictly decode a stored document.

        Parameters
        ----------
        document : Mapping
            Document fields (camelCase or snake_case keys).
        record_id : str or None
            Identifier when the store keeps it outside the document body.
        sequence : int or None
            Fallback insertion order when the document does not carry one.

        Raises
        ------
        MalformedRecordError
            If a field is missing, has the wrong type, or is out of range.
        """
        if not isinstance(document, Mapping):
            raise MalformedRecordError(
                f"Location document must be an object, got {type(document).__name__}",
                document=document,
            )
        payload = dict(document)
        if record_id is not None:
            payload["id"] = record_id
        if sequence is not None and "sequence" not in payload:
            payload["sequence"] = sequence
        try:
            return cls.model_validate(payload, strict=True)
        except ValidationError as exc:
            fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
            raise MalformedRecordError(
                f"Malformed location document (fields: {fields or 'unknown'})",
                document=document,
            ) from exc

    def to_document(self) -> dict[str, Any]:
        """Serialize using the store's camelCase field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
