"""Deterministic in-memory location view.

This is the only component allowed to merge change notifications and
fetched record lists. Given the same sequence of inputs it produces the
same ordered snapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timedelta
from itertools import chain

from gpslogger.models.location import LocationRecord
from gpslogger.state.events import ChangeType, RecordChange
from gpslogger.state.policy import best_placeholder_match, matches_placeholder, ordering_key

_logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ViewSnapshot:
    """A complete, ordered view published to presentation sinks."""

    revision: int
    generation: int
    records: tuple[LocationRecord, ...] = ()

    def __len__(self) -> int:
        return len(self.records)


class LocationView:
    """Acknowledged records keyed by id plus pending placeholders keyed by client_ref."""

    def __init__(self, *, coordinate_tolerance: float, time_tolerance: timedelta) -> None:
        self._coordinate_tolerance = coordinate_tolerance
        self._time_tolerance = time_tolerance
        self._records: dict[str, LocationRecord] = {}
        self._pending: dict[str, LocationRecord] = {}

    def copy(self) -> LocationView:
        clone = LocationView(
            coordinate_tolerance=self._coordinate_tolerance,
            time_tolerance=self._time_tolerance,
        )
        # Records are frozen, so sharing them between views is safe.
        clone._records = dict(self._records)
        clone._pending = dict(self._pending)
        return clone

    def __len__(self) -> int:
        return len(self._records) + len(self._pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _has_acknowledged_copy(self, placeholder: LocationRecord) -> bool:
        return any(
            matches_placeholder(
                placeholder,
                record,
                coordinate_tolerance=self._coordinate_tolerance,
                time_tolerance=self._time_tolerance,
            )
            for record in self._records.values()
        )

    def _resolve_placeholder(self, record: LocationRecord) -> None:
        """Drop the placeholder an acknowledged record replaces, if any."""
        if record.client_ref is not None:
            self._pending.pop(record.client_ref, None)
            return
        match = best_placeholder_match(
            self._pending.values(),
            record,
            coordinate_tolerance=self._coordinate_tolerance,
            time_tolerance=self._time_tolerance,
        )
        if match is not None and match.client_ref is not None:
            _logger.debug("Record %s replaces placeholder %s", record.id, match.client_ref)
            self._pending.pop(match.client_ref, None)

    def _upsert(self, record: LocationRecord) -> None:
        if record.id is None:
            if record.client_ref is None:
                _logger.debug("Ignoring pending record without client_ref")
                return
            # The acknowledgment can overtake the pending notification.
            if self._has_acknowledged_copy(record):
                return
            self._pending[record.client_ref] = record
            return

        known = record.id in self._records
        self._records[record.id] = record
        # An exact client_ref always resolves; tolerance matching only for new ids.
        if record.client_ref is not None or not known:
            self._resolve_placeholder(record)

    def apply(self, changes: Iterable[RecordChange]) -> None:
        """Apply changes in delivery order."""
        for change in changes:
            if change.type is ChangeType.REMOVED:
                if change.record_id is not None:
                    self._records.pop(change.record_id, None)
                elif change.client_ref is not None:
                    self._pending.pop(change.client_ref, None)
                continue
            if change.record is not None:
                self._upsert(change.record)

    def replace(self, records: Iterable[LocationRecord]) -> None:
        """Replace all acknowledged records with an authoritative full list.

        Placeholders survive unless a record carrying their client_ref, or a
        newly seen record matching them within tolerance, replaces them.
        """
        previous = self._records
        self._records = {}
        for record in records:
            if record.id is None:
                _logger.debug("Ignoring id-less record in full listing")
                continue
            self._records[record.id] = record
        for record_id, record in self._records.items():
            if record.client_ref is not None or record_id not in previous:
                self._resolve_placeholder(record)

    def ordered(self) -> tuple[LocationRecord, ...]:
        """All records, oldest first."""
        return tuple(sorted(chain(self._records.values(), self._pending.values()), key=ordering_key))
