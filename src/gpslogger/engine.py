"""Sync engine: keeps one ordered location view current and pushes it to sinks."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterable, Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from gpslogger.config import GpsLoggerConfig
from gpslogger.exceptions import (
    AlreadySubscribedError,
    GpsLoggerError,
    InvalidCoordinateError,
    StoreUnavailableError,
)
from gpslogger.models.location import LocationFix, ensure_valid_coordinate
from gpslogger.presentation import PresentationSink
from gpslogger.state.events import ChangeNotification
from gpslogger.state.policy import is_near_duplicate
from gpslogger.state.view import LocationView, ViewSnapshot
from gpslogger.store.base import LocationStore, SubmissionHandle, SyncSubscription

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EngineState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"


class SyncEngine:
    """Reconciles store changes into an ordered view.

    Usage::

        engine = SyncEngine(store, config)
        engine.add_sink(ListRowSink())
        await engine.start()
        await engine.follow(source)
        await engine.stop()

    Every start and stop bumps a generation counter. A reconciliation pass
    remembers the generation it started under and is discarded if that
    generation is gone by the time it would commit.
    """

    def __init__(
        self,
        store: LocationStore,
        config: GpsLoggerConfig | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        on_error: Callable[[GpsLoggerError], None] | None = None,
    ) -> None:
        self._store = store
        self._config = config or GpsLoggerConfig()
        self._clock = clock
        self._on_error = on_error
        self._state = EngineState.IDLE
        self._generation = 0
        self._revision = 0
        self._view = LocationView(
            coordinate_tolerance=self._config.dedup_coordinate_tolerance,
            time_tolerance=self._config.time_tolerance,
        )
        self._snapshot = ViewSnapshot(revision=0, generation=0)
        self._sinks: list[PresentationSink] = []
        self._subscription: SyncSubscription | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._purge_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self._starting = False
        self._last_fix: LocationFix | None = None
        self._last_error: GpsLoggerError | None = None
        self._revision_waiters: list[tuple[int, asyncio.Future[None]]] = []

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def snapshot(self) -> ViewSnapshot:
        """The latest published snapshot."""
        return self._snapshot

    @property
    def last_error(self) -> GpsLoggerError | None:
        """The most recent reconciliation or purge failure."""
        return self._last_error

    # ------------------------------------------------------------------
    # Sinks
    # ------------------------------------------------------------------

    def add_sink(self, sink: PresentationSink) -> None:
        if sink not in self._sinks:
            self._sinks.append(sink)

    def remove_sink(self, sink: PresentationSink) -> None:
        with contextlib.suppress(ValueError):
            self._sinks.remove(sink)

    def _render(self, snapshot: ViewSnapshot) -> None:
        for sink in tuple(self._sinks):
            try:
                sink.render(snapshot.records)
            except Exception:
                _logger.warning("Presentation sink %r failed to render", sink, exc_info=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe, seed the view and begin streaming.

        Raises
        ------
        AlreadySubscribedError
            If the engine is already streaming (no state change).
        SubscriptionFailedError
            If the store could not establish the feed; the engine stays idle.
        StoreUnavailableError
            If the seed listing failed; the feed is released and the engine
            stays idle.
        """
        if self._state is EngineState.STREAMING or self._starting:
            raise AlreadySubscribedError("Engine is already streaming", operation="start")

        self._generation += 1
        generation = self._generation
        self._starting = True
        try:
            subscription = await self._store.subscribe(include_pending_writes=self._config.include_pending_writes)
            try:
                records = await self._store.list_all()
                async with self._lock:
                    view = self._view.copy()
                    view.replace(records)
                    self._commit(view, generation)
            except Exception:
                await self._store.unsubscribe(subscription)
                raise

            # stop() ran while seeding; _commit already dropped the seed.
            if generation != self._generation:
                _logger.debug("Start of generation %d stopped before seeding finished", generation)
                await self._store.unsubscribe(subscription)
                return
        finally:
            self._starting = False

        self._subscription = subscription
        self._state = EngineState.STREAMING
        self._consumer = asyncio.create_task(self._consume(subscription, generation))
        _logger.debug("Engine streaming generation=%d records=%d", generation, len(records))

        retention = self._config.retention
        if retention is not None:
            self._purge_task = asyncio.create_task(self._purge_on_start(retention))

    async def stop(self) -> None:
        """Stop streaming. The last view stays visible. No-op when idle.

        Also cancels a :meth:`start` that is still seeding; that call then
        releases its subscription and returns with the engine idle.
        """
        if self._state is EngineState.IDLE:
            if self._starting:
                self._generation += 1
            return
        self._generation += 1
        self._state = EngineState.IDLE
        subscription = self._subscription
        self._subscription = None
        consumer = self._consumer
        self._consumer = None

        try:
            await self._store.unsubscribe(subscription)
        finally:
            if consumer is not None and consumer is not asyncio.current_task():
                consumer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await consumer
        _logger.debug("Engine idle generation=%d", self._generation)

    async def __aenter__(self) -> SyncEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _report(self, error: GpsLoggerError) -> None:
        self._last_error = error
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:
                _logger.debug("on_error callback failed", exc_info=True)

    async def _consume(self, subscription: SyncSubscription, generation: int) -> None:
        async for notification in subscription:
            try:
                await self._reconcile(notification, generation)
            except GpsLoggerError as exc:
                _logger.warning("Reconciliation failed, keeping previous view: %s", exc)
                self._report(exc)
            except Exception as exc:
                _logger.warning("Unexpected reconciliation failure, keeping previous view", exc_info=True)
                error = StoreUnavailableError(f"Reconciliation failed: {exc}", operation="reconcile")
                error.__cause__ = exc
                self._report(error)

    async def _reconcile(self, notification: ChangeNotification, generation: int) -> None:
        async with self._lock:
            view = self._view.copy()
            if notification.requires_refetch:
                view.replace(await self._store.list_all())
            else:
                view.apply(notification.changes)
            self._commit(view, generation)

    def _commit(self, view: LocationView, generation: int) -> None:
        if generation != self._generation:
            _logger.debug("Discarding pass from generation %d (now %d)", generation, self._generation)
            return
        self._view = view
        self._revision += 1
        snapshot = ViewSnapshot(revision=self._revision, generation=generation, records=view.ordered())
        self._snapshot = snapshot
        self._render(snapshot)
        self._notify_revision()

    async def refresh(self) -> None:
        """Re-fetch the full listing and publish it.

        Raises
        ------
        StoreUnavailableError
            If the listing failed; the view is unchanged.
        """
        await self._reconcile(ChangeNotification.reset(), self._generation)

    def _notify_revision(self) -> None:
        remaining: list[tuple[int, asyncio.Future[None]]] = []
        for wanted, waiter in self._revision_waiters:
            if waiter.done():
                continue
            if self._revision >= wanted:
                waiter.set_result(None)
            else:
                remaining.append((wanted, waiter))
        self._revision_waiters = remaining

    async def wait_for_revision(self, revision: int, timeout: float) -> bool:
        """Wait until a snapshot with at least *revision* is published."""
        if self._revision >= revision:
            return True
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._revision_waiters.append((revision, waiter))
        try:
            await asyncio.wait_for(waiter, timeout)
            return True
        except TimeoutError:
            return False
        finally:
            self._revision_waiters = [entry for entry in self._revision_waiters if entry[1] is not waiter]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def ingest(self, fix: LocationFix) -> SubmissionHandle | None:
        """Submit a fix to the store.

        Returns ``None`` when *fix* repeats the previously accepted one.
        The effect reaches sinks through the change feed, never directly.

        Raises
        ------
        InvalidCoordinateError
            If the fix is out of range.
        """
        ensure_valid_coordinate(fix.latitude, fix.longitude)
        previous = self._last_fix
        if previous is not None and is_near_duplicate(
            previous,
            fix,
            coordinate_tolerance=self._config.dedup_coordinate_tolerance,
            time_tolerance=self._config.time_tolerance,
        ):
            _logger.debug("Dropping near-duplicate fix %s,%s", fix.latitude, fix.longitude)
            return None
        handle = self._store.append(fix.latitude, fix.longitude, fix.timestamp)
        self._last_fix = fix
        return handle

    async def follow(self, source: AsyncIterable[LocationFix]) -> int:
        """Ingest every fix from *source*; returns how many were accepted."""
        accepted = 0
        async for fix in source:
            try:
                handle = self.ingest(fix)
            except InvalidCoordinateError as exc:
                _logger.warning("Skipping invalid fix: %s", exc)
                continue
            if handle is not None:
                accepted += 1
        return accepted

    async def delete(self, record_id: str) -> None:
        """Delete one record; raises :class:`NotFoundError` when absent."""
        await self._store.delete(record_id)

    async def clear(self) -> int:
        """Delete every stored record."""
        return await self._store.delete_all()

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def purge_older_than(self, age: timedelta) -> int:
        """Delete records created more than *age* ago; returns the count."""
        cutoff = self._clock() - age
        deleted = await self._store.delete_older_than(cutoff)
        _logger.debug("Purged %d locations older than %s", deleted, cutoff.isoformat())
        return deleted

    async def _purge_on_start(self, retention: timedelta) -> None:
        """Best-effort stale data cleanup (failures must not break startup)."""
        try:
            await self.purge_older_than(retention)
        except GpsLoggerError as exc:
            _logger.warning("Startup purge failed: %s", exc)
            self._report(exc)
        except Exception:
            _logger.debug("Startup purge failed", exc_info=True)

    async def wait_for_purge(self) -> None:
        """Wait for the startup purge scheduled by the last :meth:`start`."""
        task = self._purge_task
        if task is not None:
            await task
