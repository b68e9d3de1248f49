"""Location stores."""

from gpslogger.store.base import BaseLocationStore, LocationStore, SubmissionHandle, SyncSubscription
from gpslogger.store.memory import MemoryLocationStore
from gpslogger.store.remote import RemoteLocationStore

__all__ = [
    "BaseLocationStore",
    "LocationStore",
    "MemoryLocationStore",
    "RemoteLocationStore",
    "SubmissionHandle",
    "SyncSubscription",
]
