"""Base model and timestamp handling for stored documents.

Every gpslogger model inherits from :class:`GpsLoggerBaseModel` which
provides:

* ``alias_generator=to_camel`` so camelCase document keys map
  automatically to snake_case fields.
* Frozen instances, so snapshots handed to sinks cannot be mutated.

Document stores disagree on how timestamps travel over the wire, so
:data:`StoreTimestamp` accepts every encoding we have seen and always
produces a timezone-aware UTC :class:`~datetime.datetime`. Anything else
is a validation error; no field silently falls back to a default.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

from gpslogger._constants import MS_THRESHOLD


def _from_epoch(seconds: float) -> datetime:
    try:
        return datetime.fromtimestamp(seconds, tz=UTC)
    except (OverflowError, OSError, ValueError) as exc:
        raise ValueError(f"epoch timestamp out of range: {seconds}") from exc


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_store_timestamp(value: Any) -> datetime:
    """Convert a stored timestamp to a UTC datetime.

    Accepts datetimes, ISO-8601 strings, epoch seconds or milliseconds,
    and ``{"seconds": ..., "nanos": ...}`` objects.

    Raises :class:`ValueError` for anything else.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        raise ValueError("timestamp must not be a boolean")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError("timestamp must be finite")
        ts = float(value)
        if ts >= MS_THRESHOLD:
            ts /= 1000.0
        return _from_epoch(ts)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("timestamp string is empty")
        return ensure_utc(datetime.fromisoformat(text))
    if isinstance(value, Mapping) and "seconds" in value:
        seconds = value.get("seconds")
        nanos = value.get("nanos", 0)
        if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
            raise ValueError(f"timestamp seconds must be numeric, got {seconds!r}")
        if isinstance(nanos, bool) or not isinstance(nanos, (int, float)):
            raise ValueError(f"timestamp nanos must be numeric, got {nanos!r}")
        return _from_epoch(float(seconds) + float(nanos) / 1e9)
    raise ValueError(f"unsupported timestamp value: {value!r}")


StoreTimestamp = Annotated[datetime, BeforeValidator(parse_store_timestamp)]
"""Annotated type that coerces any supported timestamp encoding to a UTC datetime."""


class GpsLoggerBaseModel(BaseModel):
    """Base for gpslogger document models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )
