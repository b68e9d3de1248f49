from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import UTC, datetime, timedelta

import pytest

from gpslogger.config import GpsLoggerConfig
from gpslogger.engine import EngineState, SyncEngine
from gpslogger.exceptions import (
    AlreadySubscribedError,
    GpsLoggerError,
    InvalidCoordinateError,
    NotFoundError,
    StoreUnavailableError,
    SubscriptionFailedError,
)
from gpslogger.models.location import LocationFix, LocationRecord
from gpslogger.presentation import ListRowSink
from gpslogger.store.memory import MemoryLocationStore

NOW = datetime(2026, 1, 1, 12, tzinfo=UTC)
NO_PURGE = GpsLoggerConfig(retention_seconds=0)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


class _RecordingSink:
    def __init__(self, engine: SyncEngine) -> None:
        self.engine = engine
        self.revisions: list[int] = []
        self.renders: list[tuple[LocationRecord, ...]] = []

    def render(self, records: Sequence[LocationRecord]) -> None:
        self.revisions.append(self.engine.snapshot.revision)
        self.renders.append(tuple(records))


class _BrokenSink:
    def render(self, records: Sequence[LocationRecord]) -> None:
        raise RuntimeError("display went away")


class _FlakyStore(MemoryLocationStore):
    """Fails the next ``failures`` listings."""

    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.failures = 0

    async def list_all(self) -> list[LocationRecord]:
        if self.failures:
            self.failures -= 1
            raise StoreUnavailableError("listing failed", operation="list_all")
        return await super().list_all()


class _GatedStore(MemoryLocationStore):
    """Holds listings at a gate once ``gated`` is set."""

    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.gated = False
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def list_all(self) -> list[LocationRecord]:
        if self.gated:
            self.entered.set()
            await self.gate.wait()
        return await super().list_all()


class _AnonymousAckStore(MemoryLocationStore):
    """Acknowledges writes without echoing the client_ref."""

    async def _insert(self, placeholder: LocationRecord) -> LocationRecord:
        record = await super()._insert(placeholder)
        stripped = record.model_copy(update={"client_ref": None})
        assert stripped.id is not None
        self._documents[stripped.id] = stripped
        return stripped


def _engine(store: MemoryLocationStore, config: GpsLoggerConfig = NO_PURGE, **kwargs: object) -> SyncEngine:
    return SyncEngine(store, config, clock=lambda: NOW, **kwargs)  # type: ignore[arg-type]


def _fix(lat: float, lon: float, seconds_ago: float = 1.0) -> LocationFix:
    return LocationFix(latitude=lat, longitude=lon, timestamp=NOW - timedelta(seconds=seconds_ago))


# ------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_seeds_ordered_view() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    store.insert(1.0, 1.0, created_at=NOW - timedelta(minutes=2))
    store.insert(2.0, 2.0, created_at=NOW - timedelta(minutes=3))
    store.insert(3.0, 3.0, created_at=NOW - timedelta(minutes=1))
    engine = _engine(store)
    rows = ListRowSink()
    engine.add_sink(rows)

    await engine.start()

    assert engine.state is EngineState.STREAMING
    assert engine.snapshot.revision == 1
    assert [r.latitude for r in engine.snapshot.records] == [2.0, 1.0, 3.0]
    assert [row.text for row in rows.rows] == ["2.0,2.0", "1.0,1.0", "3.0,3.0"]
    await engine.stop()


@pytest.mark.asyncio
async def test_start_twice_raises_without_state_change() -> None:
    engine = _engine(MemoryLocationStore(clock=lambda: NOW))
    await engine.start()
    generation = engine.generation

    with pytest.raises(AlreadySubscribedError):
        await engine.start()

    assert engine.state is EngineState.STREAMING
    assert engine.generation == generation
    await engine.stop()


@pytest.mark.asyncio
async def test_stop_keeps_view_and_is_idempotent() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    store.insert(1.0, 1.0)
    engine = _engine(store)

    await engine.stop()
    assert engine.generation == 0

    await engine.start()
    await engine.stop()
    generation = engine.generation
    await engine.stop()

    assert engine.state is EngineState.IDLE
    assert engine.generation == generation
    assert len(engine.snapshot) == 1
    assert store.subscription is None


@pytest.mark.asyncio
async def test_subscription_failure_leaves_engine_idle() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    store.set_online(False)
    engine = _engine(store)

    with pytest.raises(SubscriptionFailedError):
        await engine.start()

    assert engine.state is EngineState.IDLE
    assert engine.snapshot.revision == 0


@pytest.mark.asyncio
async def test_seed_failure_releases_subscription() -> None:
    store = _FlakyStore(clock=lambda: NOW)
    store.failures = 1
    engine = _engine(store)

    with pytest.raises(StoreUnavailableError):
        await engine.start()

    assert engine.state is EngineState.IDLE
    assert store.subscription is None

    await engine.start()
    assert engine.state is EngineState.STREAMING
    await engine.stop()


@pytest.mark.asyncio
async def test_context_manager_starts_and_stops() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    async with _engine(store) as engine:
        assert engine.state is EngineState.STREAMING
    assert engine.state is EngineState.IDLE


# ------------------------------------------------------------------
# Writes
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_own_write_shows_pending_then_acknowledged_once() -> None:
    store = MemoryLocationStore(clock=lambda: NOW, write_latency=0.05)
    engine = _engine(store)
    await engine.start()

    handle = engine.ingest(_fix(35.0, 139.0))
    assert handle is not None

    await _wait_until(lambda: len(engine.snapshot) == 1)
    assert engine.snapshot.records[0].pending

    record = await handle.wait(1.0)
    await _wait_until(lambda: engine.snapshot.records[0].id == record.id)
    assert len(engine.snapshot) == 1
    await engine.stop()


@pytest.mark.asyncio
async def test_acknowledgment_without_client_ref_replaces_placeholder() -> None:
    store = _AnonymousAckStore(clock=lambda: NOW, write_latency=0.02)
    engine = _engine(store)
    await engine.start()

    handle = engine.ingest(_fix(35.0, 139.0, seconds_ago=3))
    assert handle is not None
    record = await handle.wait(1.0)
    assert record.client_ref is None

    await _wait_until(lambda: any(r.id == record.id for r in engine.snapshot.records))
    assert len(engine.snapshot) == 1
    await engine.stop()


@pytest.mark.asyncio
async def test_without_pending_writes_only_acknowledged_records_show() -> None:
    store = MemoryLocationStore(clock=lambda: NOW, write_latency=0.02)
    engine = _engine(store, GpsLoggerConfig(retention_seconds=0, include_pending_writes=False))
    sink = _RecordingSink(engine)
    engine.add_sink(sink)
    await engine.start()

    handle = engine.ingest(_fix(35.0, 139.0))
    assert handle is not None
    await handle.wait(1.0)
    await _wait_until(lambda: len(engine.snapshot) == 1)

    assert not any(record.pending for render in sink.renders for record in render)
    await engine.stop()


@pytest.mark.asyncio
async def test_reset_only_store_still_converges() -> None:
    store = MemoryLocationStore(clock=lambda: NOW, deliver_diffs=False)
    engine = _engine(store)
    await engine.start()

    handle = engine.ingest(_fix(35.0, 139.0))
    assert handle is not None
    record = await handle.wait(1.0)

    await _wait_until(lambda: [r.id for r in engine.snapshot.records] == [record.id])
    await engine.stop()


@pytest.mark.asyncio
async def test_near_duplicate_fix_is_dropped() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    engine = _engine(store)

    assert engine.ingest(_fix(35.0, 139.0, seconds_ago=10)) is not None
    assert engine.ingest(_fix(35.0, 139.0, seconds_ago=5)) is None
    assert engine.ingest(_fix(35.1, 139.0, seconds_ago=5)) is not None
    await store.flush()

    assert len(store) == 2


@pytest.mark.asyncio
async def test_invalid_fix_is_rejected_before_submission() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    engine = _engine(store)

    with pytest.raises(InvalidCoordinateError):
        engine.ingest(_fix(91.0, 0.0))
    with pytest.raises(InvalidCoordinateError):
        engine.ingest(_fix(0.0, -180.5))
    await store.flush()

    assert len(store) == 0


@pytest.mark.asyncio
async def test_follow_skips_invalid_and_duplicate_fixes() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    engine = _engine(store)
    await engine.start()

    async def source() -> AsyncIterator[LocationFix]:
        yield _fix(35.0, 139.0, seconds_ago=60)
        yield _fix(95.0, 139.0, seconds_ago=50)
        yield _fix(35.0, 139.0, seconds_ago=55)
        yield _fix(35.5, 139.5, seconds_ago=40)

    accepted = await engine.follow(source())
    await store.flush()

    assert accepted == 2
    await _wait_until(lambda: len(engine.snapshot) == 2 and not any(r.pending for r in engine.snapshot.records))
    await engine.stop()


@pytest.mark.asyncio
async def test_delete_and_clear_reach_the_view() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    kept = store.insert(1.0, 1.0)
    store.insert(2.0, 2.0)
    engine = _engine(store)
    await engine.start()

    with pytest.raises(NotFoundError):
        await engine.delete("missing")

    await engine.delete(kept.id)  # type: ignore[arg-type]
    await _wait_until(lambda: len(engine.snapshot) == 1)

    assert await engine.clear() == 1
    await _wait_until(lambda: len(engine.snapshot) == 0)
    await engine.stop()


# ------------------------------------------------------------------
# Retention
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_purges_records_older_than_retention() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    fresh = store.insert(1.0, 1.0, created_at=NOW - timedelta(hours=23))
    store.insert(2.0, 2.0, created_at=NOW - timedelta(hours=25))
    store.insert(3.0, 3.0, created_at=NOW - timedelta(hours=48))
    engine = _engine(store, GpsLoggerConfig())

    await engine.start()
    await engine.wait_for_purge()

    assert [r.id for r in await store.list_all()] == [fresh.id]
    await _wait_until(lambda: [r.id for r in engine.snapshot.records] == [fresh.id])
    await engine.stop()


@pytest.mark.asyncio
async def test_purge_failure_does_not_break_start() -> None:
    errors: list[GpsLoggerError] = []

    class _NoDeleteStore(MemoryLocationStore):
        async def delete_older_than(self, cutoff: datetime) -> int:
            raise StoreUnavailableError("purge rejected", operation="delete_older_than")

    store = _NoDeleteStore(clock=lambda: NOW)
    store.insert(1.0, 1.0, created_at=NOW - timedelta(hours=48))
    engine = _engine(store, GpsLoggerConfig(), on_error=errors.append)

    await engine.start()
    await engine.wait_for_purge()

    assert engine.state is EngineState.STREAMING
    assert len(engine.snapshot) == 1
    assert isinstance(engine.last_error, StoreUnavailableError)
    assert errors == [engine.last_error]
    await engine.stop()


@pytest.mark.asyncio
async def test_purge_older_than_uses_engine_clock() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    store.insert(1.0, 1.0, created_at=NOW - timedelta(minutes=90))
    store.insert(2.0, 2.0, created_at=NOW - timedelta(minutes=30))
    engine = _engine(store)

    assert await engine.purge_older_than(timedelta(hours=1)) == 1
    assert len(store) == 1


# ------------------------------------------------------------------
# Reconciliation
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_refetch_keeps_previous_view() -> None:
    errors: list[GpsLoggerError] = []
    store = _FlakyStore(clock=lambda: NOW, deliver_diffs=False)
    store.insert(1.0, 1.0)
    engine = _engine(store, on_error=errors.append)
    await engine.start()
    seeded = engine.snapshot

    store.failures = 1
    store.insert(2.0, 2.0)
    await _wait_until(lambda: engine.last_error is not None)

    assert engine.snapshot is seeded
    assert engine.state is EngineState.STREAMING
    assert len(errors) == 1

    store.insert(3.0, 3.0)
    await _wait_until(lambda: len(engine.snapshot) == 3)
    await engine.stop()


@pytest.mark.asyncio
async def test_stop_discards_in_flight_refresh() -> None:
    store = _GatedStore(clock=lambda: NOW)
    engine = _engine(store)
    await engine.start()
    revision = engine.snapshot.revision

    store.gated = True
    refresh = asyncio.create_task(engine.refresh())
    await asyncio.wait_for(store.entered.wait(), 1.0)
    await engine.stop()
    store.gate.set()
    await refresh

    assert engine.snapshot.revision == revision
    assert not await engine.wait_for_revision(revision + 1, timeout=0.05)


@pytest.mark.asyncio
async def test_stop_during_feed_pass_publishes_nothing() -> None:
    store = _GatedStore(clock=lambda: NOW, deliver_diffs=False)
    engine = _engine(store)
    sink = _RecordingSink(engine)
    engine.add_sink(sink)
    await engine.start()

    store.gated = True
    store.insert(1.0, 1.0)
    await asyncio.wait_for(store.entered.wait(), 1.0)
    await engine.stop()
    store.gate.set()
    await asyncio.sleep(0.01)

    assert sink.revisions == [1]
    assert len(engine.snapshot) == 0


@pytest.mark.asyncio
async def test_refresh_while_idle_publishes() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    engine = _engine(store)
    store.insert(1.0, 1.0)

    await engine.refresh()

    assert engine.snapshot.revision == 1
    assert len(engine.snapshot) == 1


@pytest.mark.asyncio
async def test_sink_failure_does_not_stop_other_sinks() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    engine = _engine(store)
    engine.add_sink(_BrokenSink())
    sink = _RecordingSink(engine)
    engine.add_sink(sink)
    await engine.start()

    for index in range(3):
        store.insert(float(index), float(index))
    await _wait_until(lambda: len(engine.snapshot) == 3)

    assert sink.revisions == sorted(set(sink.revisions))
    assert sink.revisions[-1] == engine.snapshot.revision
    assert len(sink.renders[-1]) == 3
    await engine.stop()


@pytest.mark.asyncio
async def test_removed_sink_is_not_rendered() -> None:
    engine = _engine(MemoryLocationStore(clock=lambda: NOW))
    sink = _RecordingSink(engine)
    engine.add_sink(sink)
    engine.add_sink(sink)
    engine.remove_sink(sink)
    engine.remove_sink(sink)

    await engine.refresh()

    assert sink.revisions == []


@pytest.mark.asyncio
async def test_wait_for_revision() -> None:
    store = MemoryLocationStore(clock=lambda: NOW)
    engine = _engine(store)
    await engine.start()

    assert await engine.wait_for_revision(1, timeout=0.01)
    assert not await engine.wait_for_revision(2, timeout=0.01)

    waiter = asyncio.create_task(engine.wait_for_revision(2, timeout=1.0))
    await asyncio.sleep(0)
    store.insert(1.0, 1.0)

    assert await waiter
    await engine.stop()


@pytest.mark.asyncio
async def test_unexpected_refetch_error_keeps_streaming() -> None:
    errors: list[GpsLoggerError] = []

    class _GarbledStore(MemoryLocationStore):
        garbled = 0

        async def list_all(self) -> list[LocationRecord]:
            if self.garbled:
                self.garbled -= 1
                raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
            return await super().list_all()

    store = _GarbledStore(clock=lambda: NOW, deliver_diffs=False)
    engine = _engine(store, on_error=errors.append)
    await engine.start()

    store.garbled = 1
    store.insert(1.0, 1.0)
    await _wait_until(lambda: engine.last_error is not None)

    assert isinstance(engine.last_error, StoreUnavailableError)
    assert isinstance(engine.last_error.__cause__, UnicodeDecodeError)
    assert errors == [engine.last_error]
    assert len(engine.snapshot) == 0

    store.insert(2.0, 2.0)
    await _wait_until(lambda: len(engine.snapshot) == 2)
    assert engine.state is EngineState.STREAMING
    await engine.stop()


@pytest.mark.asyncio
async def test_stop_while_seeding_leaves_engine_idle() -> None:
    store = _GatedStore(clock=lambda: NOW)
    store.insert(1.0, 1.0)
    store.gated = True
    engine = _engine(store)
    sink = _RecordingSink(engine)
    engine.add_sink(sink)

    starting = asyncio.create_task(engine.start())
    await asyncio.wait_for(store.entered.wait(), 1.0)
    await engine.stop()
    store.gate.set()
    await starting

    assert engine.state is EngineState.IDLE
    assert store.subscription is None
    assert engine.snapshot.revision == 0
    assert sink.revisions == []

    store.gated = False
    await engine.start()
    assert engine.state is EngineState.STREAMING
    assert len(engine.snapshot) == 1
    await engine.stop()


@pytest.mark.asyncio
async def test_start_while_seeding_is_rejected() -> None:
    store = _GatedStore(clock=lambda: NOW)
    store.gated = True
    engine = _engine(store)

    starting = asyncio.create_task(engine.start())
    await asyncio.wait_for(store.entered.wait(), 1.0)
    with pytest.raises(AlreadySubscribedError):
        await engine.start()

    store.gate.set()
    await starting
    assert engine.state is EngineState.STREAMING
    await engine.stop()


@pytest.mark.asyncio
async def test_seed_failure_skips_startup_purge() -> None:
    store = _FlakyStore(clock=lambda: NOW)
    store.insert(1.0, 1.0, created_at=NOW - timedelta(hours=48))
    store.failures = 1
    engine = _engine(store, GpsLoggerConfig())

    with pytest.raises(StoreUnavailableError):
        await engine.start()
    await engine.wait_for_purge()
    await asyncio.sleep(0.01)

    assert len(store) == 1
