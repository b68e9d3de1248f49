"""In-process location store.

Behaves like the remote store from a subscriber's point of view: writes
are acknowledged asynchronously with a server-assigned id, timestamp and
insertion sequence, and every mutation is announced on the change feed.
Useful for tests and for running the engine without a backend.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from gpslogger.exceptions import NotFoundError, StoreUnavailableError
from gpslogger.models._base import ensure_utc
from gpslogger.models.location import LocationRecord, ensure_valid_coordinate
from gpslogger.state.events import RecordChange
from gpslogger.state.policy import ordering_key
from gpslogger.store.base import BaseLocationStore, SyncSubscription, _utcnow

_logger = logging.getLogger(__name__)


class MemoryLocationStore(BaseLocationStore):
    """Dictionary-backed store with an injectable server clock.

    Parameters
    ----------
    clock : callable
        Server clock; assigns ``created_at`` on acknowledgment.
    write_latency : float
        Seconds between ``append`` and the acknowledgment.
    deliver_diffs : bool
        When ``False`` every notification is a reset, forcing subscribers
        to re-fetch instead of applying changes incrementally.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        write_latency: float = 0.0,
        deliver_diffs: bool = True,
    ) -> None:
        super().__init__(clock=clock, deliver_diffs=deliver_diffs)
        self._write_latency = write_latency
        self._documents: dict[str, LocationRecord] = {}
        self._sequence = itertools.count(1)
        self._online = True

    def __len__(self) -> int:
        return len(self._documents)

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Simulate losing or regaining connectivity."""
        _logger.debug("Memory store %s", "online" if online else "offline")
        self._online = online

    def _require_online(self, operation: str) -> None:
        if not self._online:
            raise StoreUnavailableError(f"Store is offline ({operation})", operation=operation)

    def _acknowledge(self, record: LocationRecord, created_at: datetime | None = None) -> LocationRecord:
        acknowledged = record.model_copy(
            update={
                "id": uuid.uuid4().hex,
                "created_at": ensure_utc(created_at) if created_at is not None else self._clock(),
                "sequence": next(self._sequence),
            }
        )
        assert acknowledged.id is not None  # noqa: S101
        self._documents[acknowledged.id] = acknowledged
        return acknowledged

    async def _insert(self, placeholder: LocationRecord) -> LocationRecord:
        await asyncio.sleep(self._write_latency)
        self._require_online("append")
        return self._acknowledge(placeholder)

    def insert(
        self,
        latitude: float,
        longitude: float,
        *,
        created_at: datetime | None = None,
        client_ref: str | None = None,
    ) -> LocationRecord:
        """Write a record directly, the way another client would.

        ``created_at`` overrides the server clock, which lets tests place
        records at arbitrary ages.
        """
        latitude, longitude = ensure_valid_coordinate(latitude, longitude)
        self._require_online("insert")
        draft = LocationRecord(
            latitude=latitude,
            longitude=longitude,
            created_at=self._clock(),
            client_ref=client_ref,
        )
        record = self._acknowledge(draft, created_at)
        self._publish((RecordChange.upsert(record),))
        return record

    async def list_all(self) -> list[LocationRecord]:
        await asyncio.sleep(0)
        self._require_online("list_all")
        return sorted(self._documents.values(), key=ordering_key)

    async def delete(self, record_id: str) -> None:
        self._require_online("delete")
        if self._documents.pop(record_id, None) is None:
            raise NotFoundError(f"No location with id {record_id!r}", record_id=record_id)
        self._publish((RecordChange.removed(record_id=record_id),))

    def _delete_where(self, predicate: Callable[[LocationRecord], bool]) -> int:
        doomed = [record_id for record_id, record in self._documents.items() if predicate(record)]
        for record_id in doomed:
            del self._documents[record_id]
        if doomed:
            self._publish(RecordChange.removed(record_id=record_id) for record_id in doomed)
        return len(doomed)

    async def delete_older_than(self, cutoff: datetime) -> int:
        self._require_online("delete_older_than")
        cutoff = ensure_utc(cutoff)
        return self._delete_where(lambda record: record.created_at < cutoff)

    async def delete_all(self) -> int:
        self._require_online("delete_all")
        return self._delete_where(lambda _record: True)

    async def _open_feed(self, subscription: SyncSubscription) -> None:
        self._require_online("subscribe")
