"""Helpers for safe debug logging.

Request traces carry the API key, the bearer header and sometimes broker
credentials. :func:`redact_for_log` masks them before they reach DEBUG logs.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

# Compared after lowercasing and dropping "-" / "_", so "apiKey",
# "api_key" and "X-Api-Key" all match.
_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "apikey",
        "xapikey",
        "authorization",
        "password",
        "feedpassword",
        "token",
        "accesstoken",
        "cookie",
    }
)

_MAX_DEPTH = 20


def _is_sensitive(key: Any) -> bool:
    normalized = str(key).lower().replace("-", "").replace("_", "")
    return normalized in _SENSITIVE_KEYS


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a copy of *value* with secrets masked and long strings cut."""
    if _depth > _MAX_DEPTH:
        return "<max-depth>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"
    if isinstance(value, Mapping):
        return {
            str(k): "<redacted>" if _is_sensitive(k) else redact_for_log(v, max_string=max_string, _depth=_depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, Sequence):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]
    return repr(value)
