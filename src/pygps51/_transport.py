"""HTTP transport for the GPS51 ``openapi`` endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from pygps51._constants import USER_AGENT
from pygps51._redact import redact_for_log, redact_url
from pygps51.config import Gps51Config
from pygps51.exceptions import Gps51TransportError

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by :class:`~pygps51.client.Gps51Client`.

    Implementations raise :class:`Gps51TransportError` (with ``status_code``
    set for HTTP errors) and otherwise return the decoded JSON object.
    """

    async def post_action(
        self,
        action: str,
        query: Mapping[str, str],
        body: Mapping[str, Any],
    ) -> dict[str, Any]: ...


class HttpTransport:
    """aiohttp transport posting JSON bodies to ``{base_url}/openapi``."""

    def __init__(self, config: Gps51Config, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    async def post_action(
        self,
        action: str,
        query: Mapping[str, str],
        body: Mapping[str, Any],
    ) -> dict[str, Any]:
        url = f"{self._config.base_url.rstrip('/')}/openapi"
        params = {"action": action, **query}
        headers = {
            "accept": "application/json",
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }

        if self._config.api_trace_enabled:
            _logger.debug(
                "POST %s action=%s body=%s",
                redact_url(url),
                action,
                redact_for_log(dict(body)),
            )

        try:
            async with self._http.post(
                url,
                params=params,
                data=json.dumps(body, separators=(",", ":")),
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise Gps51TransportError(
                        f"HTTP {resp.status} from {action}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=action,
                    )
        except Gps51TransportError:
            raise
        except asyncio.TimeoutError as exc:
            raise Gps51TransportError(
                f"Request to {action} timed out after {self._config.request_timeout}s",
                endpoint=action,
            ) from exc
        except aiohttp.ClientError as exc:
            raise Gps51TransportError(f"Request to {action} failed: {exc}", endpoint=action) from exc

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise Gps51TransportError(f"Invalid JSON from {action}: {text[:200]}", endpoint=action) from exc

        if not isinstance(payload, dict):
            raise Gps51TransportError(f"Unexpected JSON shape from {action}", endpoint=action)

        if self._config.api_trace_enabled:
            _logger.debug("Response from %s: %s", action, redact_for_log(payload))
        return payload
