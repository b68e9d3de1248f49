"""Remote document store: JSON over HTTP plus an MQTT change feed."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any
from urllib.parse import quote

import aiohttp

from gpslogger._constants import API_PREFIX
from gpslogger._mqtt import ChangeFeed, ChangeFeedRuntime, FeedBootstrap
from gpslogger._transport import JsonTransport, Transport
from gpslogger.config import GpsLoggerConfig
from gpslogger.exceptions import (
    GpsLoggerError,
    MalformedRecordError,
    NotFoundError,
    StoreUnavailableError,
    TransportError,
)
from gpslogger.models._base import ensure_utc
from gpslogger.models.location import LocationRecord
from gpslogger.state.events import ChangeNotification, RecordChange
from gpslogger.state.policy import ordering_key
from gpslogger.store.base import BaseLocationStore, SyncSubscription, _utcnow

_logger = logging.getLogger(__name__)

FeedFactory = Callable[[GpsLoggerConfig, asyncio.AbstractEventLoop, Callable[[ChangeNotification], None]], ChangeFeed]


def _default_feed_factory(
    config: GpsLoggerConfig,
    loop: asyncio.AbstractEventLoop,
    on_notification: Callable[[ChangeNotification], None],
) -> ChangeFeed:
    return ChangeFeedRuntime(
        bootstrap=FeedBootstrap.from_config(config),
        loop=loop,
        on_notification=on_notification,
        logger=_logger,
    )


def _deleted_count(response: Mapping[str, Any]) -> int:
    value = response.get("deleted", 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedRecordError(f"Batch delete returned a non-integer count: {value!r}", document=response)
    return value


class RemoteLocationStore(BaseLocationStore):
    """Location store backed by a hosted document database.

    Usage::

        async with RemoteLocationStore(GpsLoggerConfig.from_env()) as store:
            engine = SyncEngine(store)
            await engine.start()
    """

    def __init__(
        self,
        config: GpsLoggerConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: Transport | None = None,
        feed_factory: FeedFactory = _default_feed_factory,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(clock=clock)
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport = transport
        self._feed_factory = feed_factory
        self._feed: ChangeFeed | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> RemoteLocationStore:
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self._config.request_timeout),
                )
            self._transport = JsonTransport(self._config, self._http_session)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
            self._transport = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def _documents_endpoint(self) -> str:
        return f"{API_PREFIX}/{quote(self._config.collection, safe='')}/documents"

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise GpsLoggerError("Store not initialized. Use 'async with RemoteLocationStore(...) as store:'")
        return self._transport

    async def _call(
        self,
        operation: str,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, str] | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        transport = self._require_transport()
        try:
            return await transport.request(method, endpoint, params=params, payload=payload)
        except TransportError as exc:
            raise StoreUnavailableError(f"{operation} failed: {exc}", operation=operation) from exc

    # ------------------------------------------------------------------
    # Store operations
    # ------------------------------------------------------------------

    async def _insert(self, placeholder: LocationRecord) -> LocationRecord:
        body = {
            "latitude": placeholder.latitude,
            "longitude": placeholder.longitude,
            "clientCreatedAt": placeholder.created_at.isoformat(),
            "clientRef": placeholder.client_ref,
        }
        response = await self._call("append", "POST", self._documents_endpoint, payload=body)
        document = response.get("document", response)
        record = LocationRecord.from_document(document)
        if record.id is None:
            raise MalformedRecordError("Store acknowledged a write without an id", document=response)
        if record.client_ref is None:
            record = record.model_copy(update={"client_ref": placeholder.client_ref})
        return record

    async def list_all(self) -> list[LocationRecord]:
        response = await self._call(
            "list_all",
            "GET",
            self._documents_endpoint,
            params={"orderBy": "createdAt", "direction": "asc"},
        )
        documents = response.get("documents", [])
        if not isinstance(documents, list):
            raise MalformedRecordError("Listing 'documents' is not a list", document=response)
        # The listing is already ordered, so its position is a valid tie-breaker.
        records = [LocationRecord.from_document(doc, sequence=index) for index, doc in enumerate(documents)]
        _logger.debug("Listed %d locations", len(records))
        return sorted(records, key=ordering_key)

    async def delete(self, record_id: str) -> None:
        transport = self._require_transport()
        endpoint = f"{self._documents_endpoint}/{quote(record_id, safe='')}"
        try:
            await transport.request("DELETE", endpoint)
        except TransportError as exc:
            if exc.status_code == 404:
                raise NotFoundError(f"No location with id {record_id!r}", record_id=record_id) from exc
            raise StoreUnavailableError(f"delete failed: {exc}", operation="delete") from exc
        self._publish((RecordChange.removed(record_id=record_id),))

    async def _batch_delete(self, operation: str, where: Mapping[str, Any] | None) -> int:
        payload: dict[str, Any] = {"where": dict(where)} if where is not None else {}
        response = await self._call(operation, "POST", f"{self._documents_endpoint}:batchDelete", payload=payload)
        deleted = _deleted_count(response)
        _logger.debug("%s removed %d locations", operation, deleted)
        if deleted:
            # The response does not list ids; subscribers re-fetch.
            self._publish_reset()
        return deleted

    async def delete_older_than(self, cutoff: datetime) -> int:
        where = {"field": "createdAt", "op": "<", "value": ensure_utc(cutoff).isoformat()}
        return await self._batch_delete("delete_older_than", where)

    async def delete_all(self) -> int:
        return await self._batch_delete("delete_all", None)

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    async def _open_feed(self, subscription: SyncSubscription) -> None:
        loop = asyncio.get_running_loop()
        feed = self._feed_factory(
            self._config,
            loop,
            subscription.deliver,
        )
        await loop.run_in_executor(None, feed.start)
        self._feed = feed

    async def _close_feed(self) -> None:
        feed = self._feed
        self._feed = None
        if feed is None:
            return
        try:
            await asyncio.get_running_loop().run_in_executor(None, feed.stop)
        except Exception:
            _logger.debug("Change feed stop failed", exc_info=True)
