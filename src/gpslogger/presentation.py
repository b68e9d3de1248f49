"""Presentation sinks.

A sink receives the complete ordered record list on every published
snapshot and replaces whatever it displayed before. Rendering the same
list twice leaves it in the same state.

The two sinks below produce the data a map and a table need (pins and
rows) without depending on any UI toolkit.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from gpslogger.models.location import LocationRecord


class PresentationSink(Protocol):
    def render(self, records: Sequence[LocationRecord]) -> None: ...


def format_coordinate(record: LocationRecord) -> str:
    """``"lat,lon"`` as shown in pin titles and row labels."""
    return f"{record.latitude},{record.longitude}"


def format_created_at(record: LocationRecord) -> str:
    return record.created_at.isoformat()


@dataclass(frozen=True, slots=True)
class MapPin:
    latitude: float
    longitude: float
    title: str
    subtitle: str
    pending: bool = False


@dataclass(frozen=True, slots=True)
class ListRow:
    text: str
    detail: str
    record_id: str | None = None


class MapPinSink:
    """One pin per record, in view order."""

    def __init__(self, on_change: Callable[[tuple[MapPin, ...]], None] | None = None) -> None:
        self._pins: tuple[MapPin, ...] = ()
        self._on_change = on_change

    @property
    def pins(self) -> tuple[MapPin, ...]:
        return self._pins

    def render(self, records: Sequence[LocationRecord]) -> None:
        pins = tuple(
            MapPin(
                latitude=record.latitude,
                longitude=record.longitude,
                title=format_coordinate(record),
                subtitle=format_created_at(record),
                pending=record.pending,
            )
            for record in records
        )
        changed = pins != self._pins
        self._pins = pins
        if changed and self._on_change is not None:
            self._on_change(pins)


class ListRowSink:
    """One table row per record: coordinate as text, creation time as detail."""

    def __init__(self, on_change: Callable[[tuple[ListRow, ...]], None] | None = None) -> None:
        self._rows: tuple[ListRow, ...] = ()
        self._on_change = on_change

    @property
    def rows(self) -> tuple[ListRow, ...]:
        return self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def render(self, records: Sequence[LocationRecord]) -> None:
        rows = tuple(
            ListRow(text=format_coordinate(record), detail=format_created_at(record), record_id=record.id)
            for record in records
        )
        changed = rows != self._rows
        self._rows = rows
        if changed and self._on_change is not None:
            self._on_change(rows)
