"""MQTT change feed: payload decoding and the threaded runtime."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, cast

import paho.mqtt.client as mqtt

from gpslogger.config import GpsLoggerConfig
from gpslogger.exceptions import MalformedRecordError
from gpslogger.models.location import LocationRecord
from gpslogger.state.events import ChangeNotification, ChangeType, RecordChange


@dataclass(frozen=True)
class FeedBootstrap:
    """Broker details required to follow the change feed."""

    broker_host: str
    broker_port: int
    topic: str
    client_id: str
    username: str | None = None
    password: str | None = None
    tls: bool = True
    keepalive: int = 60

    @classmethod
    def from_config(cls, config: GpsLoggerConfig) -> FeedBootstrap:
        return cls(
            broker_host=config.resolved_feed_host,
            broker_port=config.feed_port,
            topic=config.resolved_feed_topic,
            client_id=f"gpslogger-{uuid.uuid4().hex[:12]}",
            username=config.feed_username,
            password=config.feed_password,
            tls=config.feed_tls,
            keepalive=config.feed_keepalive,
        )


class ChangeFeed(Protocol):
    """What the remote store needs from a feed runtime."""

    @property
    def is_running(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


def _decode_change(item: Any) -> RecordChange:
    if not isinstance(item, dict):
        raise MalformedRecordError("Change entry is not an object", document=item)

    raw_type = item.get("type")
    try:
        change_type = ChangeType(str(raw_type).strip().lower())
    except ValueError as exc:
        raise MalformedRecordError(f"Unknown change type {raw_type!r}", document=item) from exc

    record_id = item.get("id")
    if record_id is not None and not isinstance(record_id, str):
        raise MalformedRecordError(f"Change id must be a string, got {record_id!r}", document=item)

    if change_type is ChangeType.REMOVED:
        client_ref = item.get("clientRef")
        if record_id is None and not isinstance(client_ref, str):
            raise MalformedRecordError("Removal without id or clientRef", document=item)
        return RecordChange.removed(record_id=record_id, client_ref=client_ref if isinstance(client_ref, str) else None)

    record = LocationRecord.from_document(item.get("document"), record_id=record_id)
    if record.id is None:
        raise MalformedRecordError("Changed document has no id", document=item)
    return RecordChange.upsert(record, modified=change_type is ChangeType.MODIFIED)


def decode_change_payload(payload: bytes) -> ChangeNotification:
    """Decode one MQTT message into a change notification.

    A payload without changes decodes to a reset.

    Raises
    ------
    MalformedRecordError
        If the payload is not JSON or any change entry is invalid.
    """
    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedRecordError("Change payload is not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise MalformedRecordError("Change payload is not an object", document=parsed)

    raw_changes = parsed.get("changes") or []
    if not isinstance(raw_changes, list):
        raise MalformedRecordError("Change payload 'changes' is not a list", document=parsed)

    return ChangeNotification(
        changes=tuple(_decode_change(item) for item in raw_changes),
        has_pending_writes=bool(parsed.get("hasPendingWrites", False)),
    )


class ChangeFeedRuntime:
    """Threaded paho-mqtt runtime that emits notifications onto an asyncio loop.

    Undecodable messages and reconnects are delivered as resets so the
    subscriber re-fetches rather than trusting a view that may have missed
    changes.
    """

    def __init__(
        self,
        *,
        bootstrap: FeedBootstrap,
        loop: asyncio.AbstractEventLoop,
        on_notification: Callable[[ChangeNotification], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._bootstrap = bootstrap
        self._loop = loop
        self._on_notification = on_notification
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected_once = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def _emit(self, notification: ChangeNotification) -> None:
        self._loop.call_soon_threadsafe(self._on_notification, notification)

    def start(self) -> None:
        """Connect and subscribe. Blocking; run it in an executor."""
        self.stop()
        bootstrap = self._bootstrap
        self._logger.debug(
            "Change feed start requested host=%s port=%s topic=%s client_id=%s",
            bootstrap.broker_host,
            bootstrap.broker_port,
            bootstrap.topic,
            bootstrap.client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=bootstrap.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if bootstrap.username:
            client.username_pw_set(bootstrap.username, bootstrap.password)
        if bootstrap.tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("Change feed connect failed: %s", reason_code)
                return
            self._logger.debug("Change feed connected reason=%s", reason_code)
            c.subscribe(bootstrap.topic, qos=1)
            if self._connected_once:
                # Changes may have been missed while disconnected.
                self._emit(ChangeNotification.reset())
            self._connected_once = True

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                notification = decode_change_payload(msg.payload)
            except MalformedRecordError as exc:
                self._logger.warning("Undecodable change on %s, requesting re-fetch: %s", msg.topic, exc)
                notification = ChangeNotification.reset()
            self._logger.debug(
                "Change feed message topic=%s changes=%d",
                msg.topic,
                len(notification.changes),
            )
            self._emit(notification)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("Change feed disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect(bootstrap.broker_host, bootstrap.broker_port, keepalive=bootstrap.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("Change feed network loop started")

    def stop(self) -> None:
        """Stop and disconnect the MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._connected_once = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("Change feed disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("Change feed network loop stopped")
