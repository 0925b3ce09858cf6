"""Helpers for safe debug logging.

GPS51 requests carry the vendor token in the query string and account
details in some bodies.  These helpers scrub them before DEBUG logging.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "token",
        "password",
        "access_token",
        "authorization",
        "cookie",
        "simnum",
    }
)

_TOKEN_QUERY_RE = re.compile(r"(?i)(token=)[^&]*")


def redact_url(url: str) -> str:
    """Mask the ``token`` query parameter of an openapi URL."""
    return _TOKEN_QUERY_RE.sub(r"\1<redacted>", url)


def redact_for_log(value: Any, *, max_string: int = 256, max_items: int = 20, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs.

    Long strings are truncated and long lists (e.g. a full position batch)
    are cut down to *max_items* entries.
    """
    if _depth > 10:
        return "<max-depth>"

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        if len(value) > max_string:
            return f"{value[:max_string]}…<truncated>"
        return value

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            if key.lower() in _SENSITIVE_KEYS:
                redacted[key] = "<redacted>"
            else:
                redacted[key] = redact_for_log(v, max_string=max_string, max_items=max_items, _depth=_depth + 1)
        return redacted

    if isinstance(value, Sequence):
        items = [
            redact_for_log(v, max_string=max_string, max_items=max_items, _depth=_depth + 1)
            for v in value[:max_items]
        ]
        if len(value) > max_items:
            items.append(f"<+{len(value) - max_items} more>")
        return items

    return repr(value)
