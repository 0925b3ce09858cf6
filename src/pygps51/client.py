"""High-level async client for the GPS51 openapi."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta, timezone
from typing import Any

import aiohttp
from pydantic import ValidationError

from pygps51._constants import (
    ACTION_LAST_POSITION,
    ACTION_QUERY_DEVICES,
    ACTION_QUERY_TRACK,
    ACTION_QUERY_TRIPS,
    AUTH_EXPIRED_HTTP_STATUSES,
    AUTH_EXPIRED_STATUSES,
    RATE_LIMITED_HTTP_STATUSES,
    RATE_LIMITED_STATUSES,
    STATUS_OK,
)
from pygps51._ratelimit import BackoffStore, LocalPacer, MemoryBackoffStore, Sleep, backoff_delay
from pygps51._transport import HttpTransport, Transport
from pygps51.config import Gps51Config
from pygps51.exceptions import (
    Gps51ApiError,
    Gps51AuthExpiredError,
    Gps51ConfigError,
    Gps51Error,
    Gps51RateLimitError,
    Gps51TransportError,
)
from pygps51.models._base import safe_int
from pygps51.models.device import DeviceInfo
from pygps51.models.trip import RawTrip
from pygps51.session import CredentialSource, Gps51Session, StaticCredentials

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclasses.dataclass(frozen=True)
class PositionBatch:
    """Result of one ``lastposition`` call.

    ``records`` are left as raw dicts so a single malformed record can be
    rejected by the normalizer without losing the rest of the batch.
    """

    records: list[dict[str, Any]]
    last_query_time: int


class Gps51Client:
    """Async client for the GPS51 openapi.

    Every vendor call goes through :meth:`call`, which enforces the shared
    backoff deadline, local pacing and the retry policy.

    Usage::

        async with Gps51Client(config, backoff_store=SqlBackoffStore(factory)) as client:
            devices = await client.query_devices()
            batch = await client.last_positions([d.device_id for d in devices])
    """

    def __init__(
        self,
        config: Gps51Config,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: Transport | None = None,
        credentials: CredentialSource | None = None,
        backoff_store: BackoffStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport = transport
        self._credentials = credentials or self._credentials_from_config(config)
        self._backoff_store: BackoffStore = backoff_store or MemoryBackoffStore()
        self._clock = clock
        self._sleep = sleep
        self._pacer = LocalPacer(config.rate_limit, monotonic=monotonic, sleep=sleep)
        self._owns_transport = transport is None

    @staticmethod
    def _credentials_from_config(config: Gps51Config) -> CredentialSource | None:
        if not config.token:
            return None
        return StaticCredentials(
            Gps51Session(token=config.token, server_id=config.server_id, username=config.username or None)
        )

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> Gps51Client:
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._transport = HttpTransport(self._config, self._http_session)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        if self._owns_transport:
            self._transport = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise Gps51Error("Client not initialized. Use 'async with Gps51Client(...) as client:'")
        return self._transport

    def _require_credential(self, action: str) -> Gps51Session:
        if self._credentials is None:
            raise Gps51ConfigError("No GPS51 credential configured (set GPS51_TOKEN or store one)")
        credential = self._credentials.current()
        if credential is None:
            raise Gps51AuthExpiredError("No GPS51 credential available", endpoint=action)
        if credential.is_expired(self._clock()):
            raise Gps51AuthExpiredError(
                f"GPS51 token expired at {credential.expires_at.isoformat() if credential.expires_at else '?'}",
                endpoint=action,
            )
        return credential

    async def _wait_for_shared_backoff(self) -> None:
        until = self._backoff_store.get_backoff_until()
        if until is None:
            return
        remaining = (until - self._clock()).total_seconds()
        if remaining > 0:
            _logger.info("Honouring shared backoff for %.1fs", remaining)
            await self._sleep(remaining)

    def _apply_shared_backoff(self, attempt: int) -> float:
        delay = backoff_delay(attempt, self._config.rate_limit)
        now = self._clock()
        self._backoff_store.extend_backoff(now + timedelta(seconds=delay), now=now)
        return delay

    # ------------------------------------------------------------------
    # Core call
    # ------------------------------------------------------------------

    async def call(self, action: str, body: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Call one openapi *action* and return the decoded payload.

        Raises
        ------
        Gps51AuthExpiredError
            The credential is expired or was rejected.  Never retried.
        Gps51RateLimitError
            Still rate limited after all retries.
        Gps51TransportError
            Network, timeout, HTTP or JSON failure after all retries.
        Gps51ApiError
            Any other non-zero ``status`` after all retries.
        """
        transport = self._require_transport()
        payload_body = dict(body or {})
        settings = self._config.rate_limit
        attempts = settings.max_retries + 1
        last_error: Gps51Error | None = None

        for attempt in range(attempts):
            credential = self._require_credential(action)
            await self._wait_for_shared_backoff()
            await self._pacer.wait()

            query = {"token": credential.token, "serverid": credential.server_id}
            rate_limited = False
            try:
                payload = await transport.post_action(action, query, payload_body)
            except Gps51TransportError as exc:
                if exc.status_code in AUTH_EXPIRED_HTTP_STATUSES:
                    raise Gps51AuthExpiredError(
                        f"GPS51 rejected the credential (HTTP {exc.status_code})",
                        code=exc.status_code,
                        endpoint=action,
                    ) from exc
                if exc.status_code in RATE_LIMITED_HTTP_STATUSES:
                    rate_limited = True
                    last_error = Gps51RateLimitError(
                        f"Rate limited by GPS51 (HTTP {exc.status_code})",
                        code=exc.status_code,
                        endpoint=action,
                    )
                else:
                    last_error = exc
            else:
                status = safe_int(payload.get("status"))
                if status == STATUS_OK:
                    self._backoff_store.record_call(self._clock())
                    return payload
                cause = payload.get("cause") or payload.get("message") or "unknown error"
                if status in AUTH_EXPIRED_STATUSES:
                    raise Gps51AuthExpiredError(
                        f"GPS51 token expired or invalid (status {status}): {cause}",
                        code=status,
                        endpoint=action,
                    )
                if status in RATE_LIMITED_STATUSES:
                    rate_limited = True
                    last_error = Gps51RateLimitError(
                        f"Rate limited by GPS51 (status {status}): {cause}",
                        code=status,
                        endpoint=action,
                    )
                else:
                    last_error = Gps51ApiError(
                        f"GPS51 {action} failed (status {status}): {cause}",
                        code=status,
                        endpoint=action,
                    )

            is_last = attempt == attempts - 1
            if rate_limited:
                delay = self._apply_shared_backoff(attempt)
                _logger.warning(
                    "GPS51 rate limit on %s (attempt %d/%d); shared backoff %.1fs",
                    action,
                    attempt + 1,
                    attempts,
                    delay,
                )
            elif not is_last:
                delay = backoff_delay(attempt, settings)
                _logger.warning(
                    "GPS51 %s failed (attempt %d/%d): %s; retrying in %.1fs",
                    action,
                    attempt + 1,
                    attempts,
                    last_error,
                    delay,
                )
                await self._sleep(delay)

        assert last_error is not None  # noqa: S101
        _logger.error("GPS51 %s gave up after %d attempts: %s", action, attempts, last_error)
        raise last_error

    # ------------------------------------------------------------------
    # Typed endpoints
    # ------------------------------------------------------------------

    async def query_devices(self) -> list[DeviceInfo]:
        """List every device of the account (``querymonitorlist``)."""
        credential = self._require_credential(ACTION_QUERY_DEVICES)
        username = credential.username or self._config.username
        if not username:
            raise Gps51ConfigError("querymonitorlist needs a username (set GPS51_USERNAME)")
        payload = await self.call(ACTION_QUERY_DEVICES, {"username": username})

        devices: list[DeviceInfo] = []
        for group in payload.get("groups") or []:
            if not isinstance(group, dict):
                continue
            for item in group.get("devices") or []:
                if not isinstance(item, dict):
                    continue
                merged = {"groupid": group.get("groupid"), "groupname": group.get("groupname"), **item}
                try:
                    devices.append(DeviceInfo.model_validate(merged))
                except ValidationError:
                    _logger.warning("Skipping malformed device record: %s", item.get("deviceid"), exc_info=True)
        return devices

    async def last_positions(self, device_ids: Iterable[str], last_query_time: int = 0) -> PositionBatch:
        """Latest position of each device (``lastposition``).

        *last_query_time* is the vendor watermark returned by the previous
        call; ``0`` asks for everything.
        """
        ids = list(device_ids)
        payload = await self.call(
            ACTION_LAST_POSITION,
            {"deviceids": ids, "lastquerypositiontime": int(last_query_time)},
        )
        records = [record for record in payload.get("records") or [] if isinstance(record, dict)]
        watermark = safe_int(payload.get("lastquerypositiontime"))
        return PositionBatch(records=records, last_query_time=watermark if watermark is not None else last_query_time)

    async def query_trips(self, device_id: str, begin: datetime, end: datetime) -> list[RawTrip]:
        """Vendor trip segments of one device between *begin* and *end* (``querytrips``)."""
        offset = self._config.normalizer.vendor_utc_offset_hours
        vendor_tz = timezone(timedelta(hours=offset))
        fmt = "%Y-%m-%d %H:%M:%S"
        payload = await self.call(
            ACTION_QUERY_TRIPS,
            {
                "deviceid": device_id,
                "begintime": begin.astimezone(vendor_tz).strftime(fmt),
                "endtime": end.astimezone(vendor_tz).strftime(fmt),
                "timezone": int(offset) if float(offset).is_integer() else offset,
            },
        )
        trips: list[RawTrip] = []
        for record in payload.get("records") or payload.get("totaltrips") or []:
            if not isinstance(record, dict):
                continue
            trips.append(RawTrip.model_validate(record))
        return trips

    async def query_tracks(self, device_id: str, begin: datetime, end: datetime) -> list[dict[str, Any]]:
        """Recorded track points of one device between *begin* and *end* (``querytrack``).

        Points are returned as received; WGS84 coordinates are requested.
        """
        vendor_tz = timezone(timedelta(hours=self._config.normalizer.vendor_utc_offset_hours))
        fmt = "%Y-%m-%d %H:%M:%S"
        payload = await self.call(
            ACTION_QUERY_TRACK,
            {
                "deviceid": device_id,
                "starttime": begin.astimezone(vendor_tz).strftime(fmt),
                "endtime": end.astimezone(vendor_tz).strftime(fmt),
                "coordsys": "wgs84",
            },
        )
        records = payload.get("records")
        if records is None and isinstance(payload.get("data"), dict):
            records = payload["data"].get("records")
        return [record for record in records or [] if isinstance(record, dict)]
