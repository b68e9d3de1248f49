"""gpslogger - Record GPS fixes into a document store and keep an ordered view in sync."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("gpslogger")
except PackageNotFoundError:
    __version__ = "0+local"
from gpslogger.config import GpsLoggerConfig
from gpslogger.engine import EngineState, SyncEngine
from gpslogger.exceptions import (
    AlreadySubscribedError,
    GpsLoggerConfigError,
    GpsLoggerError,
    InvalidCoordinateError,
    MalformedRecordError,
    NotFoundError,
    StoreError,
    StoreUnavailableError,
    SubscriptionFailedError,
    TransportError,
)
from gpslogger.models import LocationFix, LocationRecord
from gpslogger.presentation import ListRow, ListRowSink, MapPin, MapPinSink, PresentationSink
from gpslogger.state.events import ChangeNotification, ChangeType, RecordChange
from gpslogger.state.view import ViewSnapshot
from gpslogger.store import (
    LocationStore,
    MemoryLocationStore,
    RemoteLocationStore,
    SubmissionHandle,
    SyncSubscription,
)

__all__ = [
    "__version__",
    "AlreadySubscribedError",
    "ChangeNotification",
    "ChangeType",
    "EngineState",
    "GpsLoggerConfig",
    "GpsLoggerConfigError",
    "GpsLoggerError",
    "InvalidCoordinateError",
    "ListRow",
    "ListRowSink",
    "LocationFix",
    "LocationRecord",
    "LocationStore",
    "MalformedRecordError",
    "MapPin",
    "MapPinSink",
    "MemoryLocationStore",
    "NotFoundError",
    "PresentationSink",
    "RecordChange",
    "RemoteLocationStore",
    "StoreError",
    "StoreUnavailableError",
    "SubmissionHandle",
    "SubscriptionFailedError",
    "SyncEngine",
    "SyncSubscription",
    "TransportError",
    "ViewSnapshot",
]
