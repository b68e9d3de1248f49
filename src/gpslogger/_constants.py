"""Internal constants shared across the library."""

from datetime import timedelta

BASE_URL = "http://localhost:8080"
USER_AGENT = "gpslogger/1"
API_PREFIX = "/v1/collections"

DEFAULT_COLLECTION = "locations"

#: Records older than this are purged when the engine starts.
DEFAULT_RETENTION = timedelta(days=1)

#: Two fixes closer than this (in degrees and seconds) are treated as one.
DEFAULT_DEDUP_COORDINATE_TOLERANCE = 1e-6
DEFAULT_DEDUP_TIME_TOLERANCE = 30.0

LATITUDE_RANGE = (-90.0, 90.0)
LONGITUDE_RANGE = (-180.0, 180.0)

# Epoch values at or above this are milliseconds.
MS_THRESHOLD = 1_000_000_000_000
