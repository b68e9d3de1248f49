"""Deterministic ordering and matching rules for the location view.

This module contains *no* I/O. The view applies these rules; stores and
the engine only feed it records.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from gpslogger.models.location import LocationFix, LocationRecord


def ordering_key(record: LocationRecord) -> tuple[datetime, int, int]:
    """Sort key: creation time, then acknowledged before pending, then insertion order."""
    return (record.created_at, 1 if record.pending else 0, record.sequence)


def same_position(
    lat_a: float,
    lon_a: float,
    lat_b: float,
    lon_b: float,
    *,
    tolerance: float,
) -> bool:
    return abs(lat_a - lat_b) <= tolerance and abs(lon_a - lon_b) <= tolerance


def matches_placeholder(
    placeholder: LocationRecord,
    record: LocationRecord,
    *,
    coordinate_tolerance: float,
    time_tolerance: timedelta,
) -> bool:
    """Decide whether an acknowledged *record* is the store's copy of *placeholder*.

    Policy:
    - If the record carries a ``client_ref``, only an exact match counts. A
      foreign token means another writer, however close the position.
    - Otherwise: same position within tolerance and ``created_at`` within the
      time tolerance (server and client clocks differ by network latency).
    """
    if record.client_ref is not None:
        return record.client_ref == placeholder.client_ref
    if not same_position(
        placeholder.latitude,
        placeholder.longitude,
        record.latitude,
        record.longitude,
        tolerance=coordinate_tolerance,
    ):
        return False
    return abs(record.created_at - placeholder.created_at) <= time_tolerance


def best_placeholder_match(
    placeholders: Iterable[LocationRecord],
    record: LocationRecord,
    *,
    coordinate_tolerance: float,
    time_tolerance: timedelta,
) -> LocationRecord | None:
    """Return the placeholder *record* replaces, preferring the closest in time."""
    candidates = [
        placeholder
        for placeholder in placeholders
        if matches_placeholder(
            placeholder,
            record,
            coordinate_tolerance=coordinate_tolerance,
            time_tolerance=time_tolerance,
        )
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda p: (abs(record.created_at - p.created_at), p.sequence))


def is_near_duplicate(
    previous: LocationFix,
    fix: LocationFix,
    *,
    coordinate_tolerance: float,
    time_tolerance: timedelta,
) -> bool:
    """Whether *fix* repeats *previous* closely enough to be dropped."""
    if not same_position(
        previous.latitude,
        previous.longitude,
        fix.latitude,
        fix.longitude,
        tolerance=coordinate_tolerance,
    ):
        return False
    return abs(fix.timestamp - previous.timestamp) <= time_tolerance
