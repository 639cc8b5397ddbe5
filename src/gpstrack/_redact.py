"""Redaction of device secrets before they reach the logs.

Position payloads and request metadata can carry the shared device token
(``X-Device-Token`` header or ``?token=`` query parameter) and MQTT
credentials. Everything logged from an ingestion path goes through here.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

REDACTED = "<redacted>"

# Compared after lower-casing and mapping "-" to "_".
_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "token",
        "device_token",
        "x_device_token",
        "password",
        "mqtt_password",
        "authorization",
        "cookie",
    }
)

_TOKEN_QUERY_RE = re.compile(r"([?&](?:token|device_token)=)[^&#]*", re.IGNORECASE)


def is_secret_key(key: object) -> bool:
    return str(key).lower().replace("-", "_") in _SECRET_KEYS


def redact_url(url: str) -> str:
    """Mask token query parameters in a request path or URL."""
    return _TOKEN_QUERY_RE.sub(lambda m: m.group(1) + REDACTED, url)


def _redact_scalar(value: Any, max_string: int) -> Any:
    if isinstance(value, str) and len(value) > max_string:
        return f"{value[:max_string]}…<truncated>"
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return repr(value)


def redact_for_log(value: Any, *, max_string: int = 256, _depth: int = 0) -> Any:
    """Return a copy of *value* with secret keys masked and long strings cut.

    Mappings keep their keys; lists and tuples come back as lists. Anything
    else that is not a plain scalar is logged by ``repr``.
    """
    if _depth > 10:
        return "<max-depth>"

    if isinstance(value, Mapping):
        return {
            str(key): REDACTED if is_secret_key(key) else redact_for_log(item, max_string=max_string, _depth=_depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_for_log(item, max_string=max_string, _depth=_depth + 1) for item in value]
    return _redact_scalar(value, max_string)
