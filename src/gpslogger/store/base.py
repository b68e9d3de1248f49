"""Location store contract and the plumbing shared by every store.

A store owns the durable records. Writes are fire-and-forget: ``append``
returns a :class:`SubmissionHandle` at once and the write completes in a
background task. Everything a subscriber sees, including its own writes,
arrives through the single active :class:`SyncSubscription`.
"""

from __future__ import annotations

import abc
import asyncio
import itertools
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from gpslogger.exceptions import (
    AlreadySubscribedError,
    GpsLoggerError,
    StoreUnavailableError,
    SubscriptionFailedError,
)
from gpslogger.models._base import ensure_utc
from gpslogger.models.location import LocationRecord, ensure_valid_coordinate
from gpslogger.state.events import ChangeNotification, RecordChange

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SyncSubscription:
    """One realtime change feed.

    Notifications are queued on an :class:`asyncio.Queue` and consumed by
    iterating the subscription. Closing it ends the iteration; anything
    still queued is dropped.
    """

    def __init__(self, *, include_pending_writes: bool) -> None:
        self.subscription_id = uuid.uuid4().hex
        self.include_pending_writes = include_pending_writes
        self._queue: asyncio.Queue[ChangeNotification | None] = asyncio.Queue()
        self._active = True

    def __repr__(self) -> str:
        return f"SyncSubscription(id={self.subscription_id[:8]}, active={self._active})"

    @property
    def active(self) -> bool:
        return self._active

    @property
    def backlog(self) -> int:
        """Notifications delivered but not consumed yet."""
        return self._queue.qsize()

    def deliver(self, notification: ChangeNotification) -> bool:
        """Queue *notification*; returns ``False`` once the subscription is closed."""
        if not self._active:
            return False
        self._queue.put_nowait(notification)
        return True

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        # Wake a consumer blocked on the queue.
        self._queue.put_nowait(None)

    def __aiter__(self) -> SyncSubscription:
        return self

    async def __anext__(self) -> ChangeNotification:
        if not self._active:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None or not self._active:
            raise StopAsyncIteration
        return item


@dataclass(slots=True)
class SubmissionHandle:
    """Tracks one fire-and-forget write.

    ``placeholder`` is the pending record shown until the store
    acknowledges the write; ``future`` resolves to the acknowledged record.
    """

    placeholder: LocationRecord
    future: asyncio.Future[LocationRecord]

    @property
    def client_ref(self) -> str:
        return self.placeholder.client_ref or ""

    def done(self) -> bool:
        return self.future.done()

    async def wait(self, timeout: float | None = None) -> LocationRecord:
        """Wait for the acknowledged record; re-raises the write failure."""
        return await asyncio.wait_for(asyncio.shield(self.future), timeout)


class LocationStore(Protocol):
    """Structural store interface used by the engine.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementations concrete.
    """

    def append(
        self,
        latitude: float,
        longitude: float,
        client_timestamp: datetime | None = None,
    ) -> SubmissionHandle: ...

    async def list_all(self) -> list[LocationRecord]: ...

    async def delete(self, record_id: str) -> None: ...

    async def delete_older_than(self, cutoff: datetime) -> int: ...

    async def delete_all(self) -> int: ...

    async def subscribe(self, *, include_pending_writes: bool = True) -> SyncSubscription: ...

    async def unsubscribe(self, subscription: SyncSubscription | None) -> None: ...


def _log_write_outcome(future: asyncio.Future[LocationRecord]) -> None:
    # Retrieving the exception keeps asyncio from warning about handles
    # nobody awaited; the failure already reached subscribers.
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        _logger.debug("Location write failed: %s", exc)


class BaseLocationStore(abc.ABC):
    """Subscription bookkeeping and append scaffolding for concrete stores.

    Subclasses implement :meth:`_insert` and the query/delete operations,
    and may hook :meth:`_open_feed` / :meth:`_close_feed` to start and stop
    a transport-level change feed.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        deliver_diffs: bool = True,
    ) -> None:
        self._clock = clock
        self._deliver_diffs = deliver_diffs
        self._subscription: SyncSubscription | None = None
        self._local_sequence = itertools.count(1)
        self._writes: set[asyncio.Task[None]] = set()

    @property
    def subscription(self) -> SyncSubscription | None:
        """The active subscription, if any."""
        return self._subscription

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(
        self,
        latitude: float,
        longitude: float,
        client_timestamp: datetime | None = None,
    ) -> SubmissionHandle:
        """Queue a durable write and return immediately.

        Raises
        ------
        InvalidCoordinateError
            If the coordinate is out of range; nothing is submitted.
        """
        latitude, longitude = ensure_valid_coordinate(latitude, longitude)
        loop = asyncio.get_running_loop()
        created_at = ensure_utc(client_timestamp) if client_timestamp is not None else self._clock()
        placeholder = LocationRecord(
            latitude=latitude,
            longitude=longitude,
            created_at=created_at,
            sequence=next(self._local_sequence),
            client_ref=uuid.uuid4().hex,
        )
        handle = SubmissionHandle(placeholder=placeholder, future=loop.create_future())
        handle.future.add_done_callback(_log_write_outcome)

        self._publish((RecordChange.upsert(placeholder),), pending=True)

        task = loop.create_task(self._submit(handle))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)
        return handle

    async def _submit(self, handle: SubmissionHandle) -> None:
        placeholder = handle.placeholder
        try:
            record = await self._insert(placeholder)
        except asyncio.CancelledError:
            handle.future.cancel()
            raise
        except Exception as exc:
            if isinstance(exc, GpsLoggerError):
                error: GpsLoggerError = exc
            else:
                error = StoreUnavailableError(f"Location write failed: {exc}", operation="append")
                error.__cause__ = exc
            _logger.warning("Location write %s failed: %s", handle.client_ref, error)
            self._publish((RecordChange.removed(client_ref=placeholder.client_ref),), pending=True)
            if not handle.future.done():
                handle.future.set_exception(error)
            return

        _logger.debug("Location write %s acknowledged as %s", handle.client_ref, record.id)
        self._publish((RecordChange.upsert(record),))
        if not handle.future.done():
            handle.future.set_result(record)

    async def flush(self) -> None:
        """Wait until every in-flight write has completed or failed."""
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    @abc.abstractmethod
    async def _insert(self, placeholder: LocationRecord) -> LocationRecord:
        """Persist *placeholder* and return the acknowledged record."""

    # ------------------------------------------------------------------
    # Queries and deletes
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def list_all(self) -> list[LocationRecord]:
        """Every stored record, ordered by ``created_at`` ascending."""

    @abc.abstractmethod
    async def delete(self, record_id: str) -> None:
        """Delete one record; raises :class:`NotFoundError` when absent."""

    @abc.abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete every record created before *cutoff*; returns the count."""

    @abc.abstractmethod
    async def delete_all(self) -> int:
        """Delete every record; returns the count."""

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    def _publish(self, changes: Iterable[RecordChange], *, pending: bool = False) -> None:
        """Deliver changes to the active subscription, if it wants them."""
        subscription = self._subscription
        if subscription is None or not subscription.active:
            return
        if pending and not subscription.include_pending_writes:
            return
        if self._deliver_diffs:
            notification = ChangeNotification(changes=tuple(changes), has_pending_writes=pending)
        else:
            notification = ChangeNotification.reset()
        subscription.deliver(notification)

    def _publish_reset(self) -> None:
        subscription = self._subscription
        if subscription is not None and subscription.active:
            subscription.deliver(ChangeNotification.reset())

    async def _open_feed(self, subscription: SyncSubscription) -> None:  # noqa: B027
        """Start the transport-level feed for *subscription*."""

    async def _close_feed(self) -> None:  # noqa: B027
        """Stop the transport-level feed."""

    async def subscribe(self, *, include_pending_writes: bool = True) -> SyncSubscription:
        """Begin a realtime change feed.

        Raises
        ------
        AlreadySubscribedError
            If a subscription is already active.
        SubscriptionFailedError
            If the feed could not be established.
        """
        current = self._subscription
        if current is not None and current.active:
            raise AlreadySubscribedError("A change feed is already active", operation="subscribe")

        subscription = SyncSubscription(include_pending_writes=include_pending_writes)
        try:
            await self._open_feed(subscription)
        except SubscriptionFailedError:
            raise
        except Exception as exc:
            raise SubscriptionFailedError(
                f"Could not establish change feed: {exc}",
                operation="subscribe",
            ) from exc
        self._subscription = subscription
        _logger.debug("Change feed %s started", subscription.subscription_id)
        return subscription

    async def unsubscribe(self, subscription: SyncSubscription | None) -> None:
        """Stop the feed. Safe to call repeatedly or with nothing active."""
        current = self._subscription
        if current is None or (subscription is not None and subscription is not current):
            if subscription is not None:
                subscription.close()
            return
        self._subscription = None
        current.close()
        await self._close_feed()
        _logger.debug("Change feed %s stopped", current.subscription_id)

    async def aclose(self) -> None:
        """Cancel in-flight writes and stop the feed."""
        for task in list(self._writes):
            task.cancel()
        if self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)
        await self.unsubscribe(self._subscription)
