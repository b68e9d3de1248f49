"""Tests for strict document decoding and coordinate validation."""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta, timezone

import pytest

from gpslogger.exceptions import InvalidCoordinateError, MalformedRecordError
from gpslogger.models import LocationFix, LocationRecord, ensure_valid_coordinate, parse_store_timestamp

# ------------------------------------------------------------------
# Timestamps
# ------------------------------------------------------------------


class TestParseStoreTimestamp:
    def test_epoch_seconds(self) -> None:
        assert parse_store_timestamp(1_767_225_600) == datetime(2026, 1, 1, tzinfo=UTC)

    def test_epoch_milliseconds(self) -> None:
        assert parse_store_timestamp(1_767_225_600_000) == datetime(2026, 1, 1, tzinfo=UTC)

    def test_iso_string_with_z(self) -> None:
        assert parse_store_timestamp("2026-01-01T10:00:00Z") == datetime(2026, 1, 1, 10, tzinfo=UTC)

    def test_offset_is_converted_to_utc(self) -> None:
        value = datetime(2026, 1, 1, 12, tzinfo=timezone(timedelta(hours=2)))
        assert parse_store_timestamp(value) == datetime(2026, 1, 1, 10, tzinfo=UTC)

    def test_seconds_nanos_object(self) -> None:
        parsed = parse_store_timestamp({"seconds": 1_767_225_600, "nanos": 500_000_000})
        assert parsed == datetime(2026, 1, 1, 0, 0, 0, 500_000, tzinfo=UTC)

    @pytest.mark.parametrize("value", [True, "", "yesterday", math.nan, [1, 2], {"nanos": 1}])
    def test_rejects_garbage(self, value: object) -> None:
        with pytest.raises(ValueError):
            parse_store_timestamp(value)


# ------------------------------------------------------------------
# Coordinates
# ------------------------------------------------------------------


class TestEnsureValidCoordinate:
    @pytest.mark.parametrize(
        ("lat", "lon"),
        [(0.0, 0.0), (-90.0, -180.0), (90.0, 180.0), (35.681236, 139.767125)],
    )
    def test_accepts_range_including_bounds(self, lat: float, lon: float) -> None:
        assert ensure_valid_coordinate(lat, lon) == (lat, lon)

    @pytest.mark.parametrize(
        ("lat", "lon"),
        [(90.0001, 0.0), (-90.5, 0.0), (0.0, 180.01), (0.0, -181.0), (math.nan, 0.0), (0.0, math.inf)],
    )
    def test_rejects_out_of_range(self, lat: float, lon: float) -> None:
        with pytest.raises(InvalidCoordinateError) as excinfo:
            ensure_valid_coordinate(lat, lon)
        assert excinfo.value.latitude is lat
        assert excinfo.value.longitude is lon

    def test_rejects_booleans_and_strings(self) -> None:
        with pytest.raises(InvalidCoordinateError):
            ensure_valid_coordinate(True, 0.0)
        with pytest.raises(InvalidCoordinateError):
            ensure_valid_coordinate("12.5", 0.0)

    def test_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            ensure_valid_coordinate(100.0, 0.0)


# ------------------------------------------------------------------
# LocationRecord
# ------------------------------------------------------------------


class TestLocationRecordFromDocument:
    def test_camel_case_document(self) -> None:
        record = LocationRecord.from_document(
            {
                "id": "doc-1",
                "latitude": 35.0,
                "longitude": 139.0,
                "createdAt": "2026-01-01T10:00:00Z",
                "sequence": 4,
                "clientRef": "ref-1",
            }
        )
        assert record.id == "doc-1"
        assert record.created_at == datetime(2026, 1, 1, 10, tzinfo=UTC)
        assert record.sequence == 4
        assert record.client_ref == "ref-1"
        assert record.pending is False

    def test_external_id_and_fallback_sequence(self) -> None:
        record = LocationRecord.from_document(
            {"latitude": 1.5, "longitude": 2.5, "createdAt": 1_767_225_600},
            record_id="doc-9",
            sequence=7,
        )
        assert record.id == "doc-9"
        assert record.sequence == 7

    def test_document_sequence_beats_fallback(self) -> None:
        record = LocationRecord.from_document(
            {"latitude": 1.5, "longitude": 2.5, "createdAt": 1_767_225_600, "sequence": 2},
            sequence=7,
        )
        assert record.sequence == 2

    @pytest.mark.parametrize(
        "document",
        [
            {"longitude": 2.5, "createdAt": 1_767_225_600},
            {"latitude": 1.5, "createdAt": 1_767_225_600},
            {"latitude": 1.5, "longitude": 2.5},
            {"latitude": "1.5", "longitude": 2.5, "createdAt": 1_767_225_600},
            {"latitude": True, "longitude": 2.5, "createdAt": 1_767_225_600},
            {"latitude": 91.0, "longitude": 2.5, "createdAt": 1_767_225_600},
            {"latitude": 1.5, "longitude": -200.0, "createdAt": 1_767_225_600},
            {"latitude": 1.5, "longitude": 2.5, "createdAt": "not a date"},
        ],
    )
    def test_malformed_documents_raise_instead_of_defaulting(self, document: dict[str, object]) -> None:
        with pytest.raises(MalformedRecordError) as excinfo:
            LocationRecord.from_document(document)
        assert excinfo.value.document is document

    def test_non_mapping_document(self) -> None:
        with pytest.raises(MalformedRecordError):
            LocationRecord.from_document(["latitude", 1.0])  # type: ignore[arg-type]

    def test_to_document_uses_store_field_names(self) -> None:
        record = LocationRecord(
            id="doc-1",
            latitude=1.5,
            longitude=2.5,
            created_at=datetime(2026, 1, 1, tzinfo=UTC),
        )
        document = record.to_document()
        assert document["createdAt"].startswith("2026-01-01T00:00:00")
        assert "clientRef" not in document
        assert LocationRecord.from_document(document) == record

    def test_records_are_frozen(self) -> None:
        record = LocationRecord(latitude=1.5, longitude=2.5, created_at=datetime(2026, 1, 1, tzinfo=UTC))
        with pytest.raises(ValueError):
            record.latitude = 3.0  # type: ignore[misc]


class TestLocationFix:
    def test_naive_timestamp_is_utc(self) -> None:
        fix = LocationFix(latitude=1.0, longitude=2.0, timestamp=datetime(2026, 1, 1, 8))
        assert fix.timestamp == datetime(2026, 1, 1, 8, tzinfo=UTC)

    def test_defaults_to_now(self) -> None:
        before = datetime.now(UTC)
        fix = LocationFix(latitude=1.0, longitude=2.0)
        assert fix.timestamp >= before

    def test_does_not_enforce_bounds(self) -> None:
        # Sources may report garbage; the engine rejects it.
        fix = LocationFix(latitude=123.0, longitude=2.0)
        assert fix.latitude == 123.0
