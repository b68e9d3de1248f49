"""Data models for stored locations."""

from gpslogger.models._base import GpsLoggerBaseModel, StoreTimestamp, ensure_utc, parse_store_timestamp
from gpslogger.models.location import LocationFix, LocationRecord, ensure_valid_coordinate

__all__ = [
    "GpsLoggerBaseModel",
    "LocationFix",
    "LocationRecord",
    "StoreTimestamp",
    "ensure_utc",
    "ensure_valid_coordinate",
    "parse_store_timestamp",
]
