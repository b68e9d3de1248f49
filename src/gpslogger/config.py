"""Client configuration for gpslogger."""

from __future__ import annotations

import dataclasses
import os
from datetime import timedelta
from typing import Any
from urllib.parse import urlsplit

from gpslogger._constants import (
    BASE_URL,
    DEFAULT_COLLECTION,
    DEFAULT_DEDUP_COORDINATE_TOLERANCE,
    DEFAULT_DEDUP_TIME_TOLERANCE,
    DEFAULT_RETENTION,
)
from gpslogger.exceptions import GpsLoggerConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(name: str, value: str, kind: type[int] | type[float]) -> int | float:
    try:
        return kind(value)
    except ValueError as exc:
        raise GpsLoggerConfigError(f"{name} must be a number, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class GpsLoggerConfig:
    """Store and engine configuration.

    Parameters
    ----------
    base_url : str
        Document API base URL.
    collection : str
        Collection holding the location documents.
    api_key : str or None
        Sent as a bearer token when set.
    request_timeout : float
        Total timeout for a single HTTP request, in seconds.
    include_pending_writes : bool
        Show unacknowledged local writes as placeholders in the view.
    retention_seconds : float
        Records older than this are purged on engine start. ``0`` disables
        the purge. Defaults to one day.
    dedup_coordinate_tolerance : float
        Degrees within which two positions are considered the same.
    dedup_time_tolerance : float
        Seconds within which two timestamps are considered the same. Also
        bounds how far a server timestamp may drift from the client one
        while still replacing the matching placeholder.
    feed_host : str or None
        MQTT broker for the change feed. Defaults to the host of ``base_url``.
    feed_port : int
        MQTT broker port.
    feed_topic : str or None
        Change feed topic. Defaults to ``"<collection>/changes"``.
    feed_username, feed_password : str or None
        MQTT credentials.
    feed_tls : bool
        Connect to the broker over TLS.
    feed_keepalive : int
        MQTT keepalive in seconds.
    api_trace_enabled : bool
        Log redacted request/response payloads at DEBUG level.
    """

    base_url: str = BASE_URL
    collection: str = DEFAULT_COLLECTION
    api_key: str | None = None
    request_timeout: float = 10.0
    include_pending_writes: bool = True
    retention_seconds: float = DEFAULT_RETENTION.total_seconds()
    dedup_coordinate_tolerance: float = DEFAULT_DEDUP_COORDINATE_TOLERANCE
    dedup_time_tolerance: float = DEFAULT_DEDUP_TIME_TOLERANCE
    feed_host: str | None = None
    feed_port: int = 8883
    feed_topic: str | None = None
    feed_username: str | None = None
    feed_password: str | None = None
    feed_tls: bool = True
    feed_keepalive: int = 60
    api_trace_enabled: bool = False

    def __post_init__(self) -> None:
        if not self.collection.strip():
            raise GpsLoggerConfigError("collection must be non-empty")
        if self.retention_seconds < 0:
            raise GpsLoggerConfigError("retention_seconds must not be negative")
        if self.dedup_coordinate_tolerance < 0 or self.dedup_time_tolerance < 0:
            raise GpsLoggerConfigError("dedup tolerances must not be negative")

    @property
    def retention(self) -> timedelta | None:
        """Retention window, or ``None`` when purging is disabled."""
        if self.retention_seconds <= 0:
            return None
        return timedelta(seconds=self.retention_seconds)

    @property
    def time_tolerance(self) -> timedelta:
        return timedelta(seconds=self.dedup_time_tolerance)

    @property
    def resolved_feed_host(self) -> str:
        if self.feed_host:
            return self.feed_host
        host = urlsplit(self.base_url).hostname
        if not host:
            raise GpsLoggerConfigError(f"Cannot derive feed host from base_url {self.base_url!r}")
        return host

    @property
    def resolved_feed_topic(self) -> str:
        return self.feed_topic or f"{self.collection}/changes"

    @classmethod
    def from_env(cls, **overrides: Any) -> GpsLoggerConfig:
        """Create configuration from environment variables.

        Reads optional ``GPSLOGGER_*`` variables. Explicit keyword
        arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        GpsLoggerConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "GPSLOGGER_BASE_URL": "base_url",
            "GPSLOGGER_COLLECTION": "collection",
            "GPSLOGGER_API_KEY": "api_key",
            "GPSLOGGER_FEED_HOST": "feed_host",
            "GPSLOGGER_FEED_TOPIC": "feed_topic",
            "GPSLOGGER_FEED_USERNAME": "feed_username",
            "GPSLOGGER_FEED_PASSWORD": "feed_password",
        }
        _ENV_NUMBER_MAP: dict[str, tuple[str, type[int] | type[float]]] = {
            "GPSLOGGER_REQUEST_TIMEOUT": ("request_timeout", float),
            "GPSLOGGER_RETENTION_SECONDS": ("retention_seconds", float),
            "GPSLOGGER_DEDUP_COORDINATE_TOLERANCE": ("dedup_coordinate_tolerance", float),
            "GPSLOGGER_DEDUP_TIME_TOLERANCE": ("dedup_time_tolerance", float),
            "GPSLOGGER_FEED_PORT": ("feed_port", int),
            "GPSLOGGER_FEED_KEEPALIVE": ("feed_keepalive", int),
        }
        _ENV_BOOL_MAP = {
            "GPSLOGGER_INCLUDE_PENDING_WRITES": ("include_pending_writes", True),
            "GPSLOGGER_FEED_TLS": ("feed_tls", True),
            "GPSLOGGER_API_TRACE_ENABLED": ("api_trace_enabled", False),
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = val

        for env_key, (field_name, kind) in _ENV_NUMBER_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, kind)

        for env_key, (field_name, default) in _ENV_BOOL_MAP.items():
            if field_name not in overrides:
                config_kwargs[field_name] = _env_bool(env.get(env_key), default)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
