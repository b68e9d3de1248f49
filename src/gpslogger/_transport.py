"""JSON-over-HTTP transport for the remote document store."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from gpslogger._constants import USER_AGENT
from gpslogger._redact import redact_for_log
from gpslogger.config import GpsLoggerConfig
from gpslogger.exceptions import TransportError

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by the remote store.

    Having a protocol here makes it easy to pass test doubles/mocks while
    keeping the production implementation (`JsonTransport`) concrete.
    """

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, str] | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]: ...


class JsonTransport:
    """HTTP transport that sends and expects JSON objects."""

    def __init__(self, config: GpsLoggerConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "accept": "application/json",
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }
        if self._config.api_key:
            headers["authorization"] = f"Bearer {self._config.api_key}"
        return headers

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, str] | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one request and return the decoded JSON object.

        An empty 2xx body decodes to ``{}``.

        Raises
        ------
        TransportError
            On network failure, timeout, non-2xx status or a body that is
            not a JSON object.
        """
        url = f"{self._config.base_url.rstrip('/')}{endpoint}"
        _logger.debug("%s %s", method, url)
        if self._config.api_trace_enabled:
            _logger.debug(
                "Request trace %s %s params=%s payload=%s",
                method,
                endpoint,
                redact_for_log(params),
                redact_for_log(payload),
            )

        try:
            async with self._http.request(
                method,
                url,
                params=dict(params) if params is not None else None,
                data=json.dumps(payload, separators=(",", ":")) if payload is not None else None,
                headers=self._headers(),
            ) as resp:
                status = resp.status
                text = await resp.text()
        except aiohttp.ClientError as exc:
            raise TransportError(
                f"Request to {endpoint} failed: {exc}",
                endpoint=endpoint,
            ) from exc
        except TimeoutError as exc:
            raise TransportError(
                f"Request to {endpoint} timed out",
                endpoint=endpoint,
            ) from exc
        except (UnicodeDecodeError, LookupError) as exc:
            # Undecodable body or an unknown charset in the content type.
            raise TransportError(
                f"Unreadable response body from {endpoint}: {exc}",
                endpoint=endpoint,
            ) from exc

        if not 200 <= status < 300:
            raise TransportError(
                f"HTTP {status} from {endpoint}: {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            )

        if not text.strip():
            return {}

        try:
            body = json.loads(text)
        except json.JSONDecodeError as exc:
            raise TransportError(
                f"Invalid JSON from {endpoint}: {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            ) from exc

        if not isinstance(body, dict):
            raise TransportError(
                f"Expected a JSON object from {endpoint}, got {type(body).__name__}",
                status_code=status,
                endpoint=endpoint,
            )

        if self._config.api_trace_enabled:
            _logger.debug("Response trace %s %s body=%s", method, endpoint, redact_for_log(body))
        return body
