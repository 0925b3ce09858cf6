from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from conftest import FakeClock
from sqlalchemy.orm import Session, sessionmaker

from pygps51._ratelimit import LocalPacer, MemoryBackoffStore, SqlBackoffStore, backoff_delay
from pygps51.client import Gps51Client
from pygps51.config import Gps51Config, RateLimitSettings
from pygps51.exceptions import (
    Gps51ApiError,
    Gps51AuthExpiredError,
    Gps51ConfigError,
    Gps51RateLimitError,
    Gps51TransportError,
)
from pygps51.session import Gps51Session, StaticCredentials, StoredCredentials
from pygps51.storage import coordination
from pygps51.storage.database import session_scope


class _ScriptedTransport:
    """Returns (or raises) the scripted responses in order; repeats the last one."""

    def __init__(self, clock: FakeClock, *responses: dict[str, Any] | Exception) -> None:
        self._clock = clock
        self._responses = list(responses)
        self.calls: list[tuple[str, dict[str, str], dict[str, Any], datetime]] = []

    async def post_action(self, action: str, query: Mapping[str, str], body: Mapping[str, Any]) -> dict[str, Any]:
        self.calls.append((action, dict(query), dict(body), self._clock.now))
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _config(**overrides: Any) -> Gps51Config:
    return Gps51Config(token="tok", server_id="7", username="fleet", **overrides)


def _client(config: Gps51Config, transport: _ScriptedTransport, clock: FakeClock, **kwargs: Any) -> Gps51Client:
    return Gps51Client(
        config,
        transport=transport,
        clock=clock,
        monotonic=clock.monotonic,
        sleep=clock.sleep,
        **kwargs,
    )


def test_backoff_delay_is_exponential_and_capped() -> None:
    settings = RateLimitSettings()
    assert [backoff_delay(n, settings) for n in range(7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


@pytest.mark.asyncio
async def test_success_sends_credential_and_records_call(clock: FakeClock) -> None:
    transport = _ScriptedTransport(clock, {"status": 0, "records": []})
    store = MemoryBackoffStore()

    async with _client(_config(), transport, clock, backoff_store=store) as client:
        payload = await client.call("lastposition", {"deviceids": ["D1"]})

    assert payload["status"] == 0
    action, query, body, _ = transport.calls[0]
    assert action == "lastposition"
    assert query == {"token": "tok", "serverid": "7"}
    assert body == {"deviceids": ["D1"]}
    assert store.last_call_at == clock.now
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_rate_limit_status_sets_shared_backoff_then_retries(clock: FakeClock) -> None:
    transport = _ScriptedTransport(clock, {"status": 8902, "cause": "too fast"}, {"status": 0})
    store = MemoryBackoffStore()
    start = clock.now

    async with _client(_config(), transport, clock, backoff_store=store) as client:
        await client.call("lastposition")

    assert store.backoff_until == start + timedelta(seconds=1)
    assert clock.sleeps == [1.0]
    assert transport.calls[1][3] >= store.backoff_until


@pytest.mark.asyncio
async def test_rate_limit_exhausted_raises(clock: FakeClock) -> None:
    transport = _ScriptedTransport(clock, Gps51TransportError("HTTP 429", status_code=429, endpoint="querytrips"))
    store = MemoryBackoffStore()

    async with _client(_config(), transport, clock, backoff_store=store) as client:
        with pytest.raises(Gps51RateLimitError) as exc_info:
            await client.call("querytrips")

    assert exc_info.value.code == 429
    assert len(transport.calls) == 4
    # Each retry waited out the deadline written by the previous attempt.
    assert clock.sleeps == [1.0, 2.0, 4.0]


@pytest.mark.parametrize(
    "response",
    [
        {"status": 9903, "cause": "token expired"},
        {"status": 9906, "cause": "token invalid"},
        Gps51TransportError("HTTP 401", status_code=401, endpoint="lastposition"),
        Gps51TransportError("HTTP 403", status_code=403, endpoint="lastposition"),
    ],
)
@pytest.mark.asyncio
async def test_auth_expired_is_not_retried(clock: FakeClock, response: dict[str, Any] | Exception) -> None:
    transport = _ScriptedTransport(clock, response)

    async with _client(_config(), transport, clock) as client:
        with pytest.raises(Gps51AuthExpiredError) as exc_info:
            await client.call("lastposition")

    assert exc_info.value.endpoint == "lastposition"
    assert len(transport.calls) == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_locally_expired_credential_skips_the_call(clock: FakeClock) -> None:
    transport = _ScriptedTransport(clock, {"status": 0})
    credentials = StaticCredentials(Gps51Session(token="old", expires_at=clock.now - timedelta(minutes=1)))

    async with _client(Gps51Config(), transport, clock, credentials=credentials) as client:
        with pytest.raises(Gps51AuthExpiredError, match="expired"):
            await client.call("lastposition")

    assert transport.calls == []


@pytest.mark.asyncio
async def test_missing_credential_is_a_config_error(clock: FakeClock) -> None:
    transport = _ScriptedTransport(clock, {"status": 0})

    async with _client(Gps51Config(), transport, clock) as client:
        with pytest.raises(Gps51ConfigError):
            await client.call("lastposition")


@pytest.mark.asyncio
async def test_other_errors_retry_locally_then_raise(clock: FakeClock) -> None:
    transport = _ScriptedTransport(clock, {"status": 1, "cause": "internal"})
    store = MemoryBackoffStore()

    async with _client(_config(), transport, clock, backoff_store=store) as client:
        with pytest.raises(Gps51ApiError) as exc_info:
            await client.call("querytrips")

    assert exc_info.value.code == 1
    assert not isinstance(exc_info.value, Gps51RateLimitError)
    assert len(transport.calls) == 4
    assert clock.sleeps == [1.0, 2.0, 4.0]
    assert store.backoff_until is None


@pytest.mark.asyncio
async def test_transient_transport_error_recovers(clock: FakeClock) -> None:
    transport = _ScriptedTransport(
        clock,
        Gps51TransportError("HTTP 502", status_code=502, endpoint="lastposition"),
        {"status": 0, "records": []},
    )

    async with _client(_config(), transport, clock) as client:
        payload = await client.call("lastposition")

    assert payload["status"] == 0
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_backoff_is_shared_across_clients(clock: FakeClock, session_factory: sessionmaker[Session]) -> None:
    config = _config(rate_limit=RateLimitSettings(max_retries=0))
    first_transport = _ScriptedTransport(clock, {"status": 8902})
    second_transport = _ScriptedTransport(clock, {"status": 0})
    start = clock.now

    async with _client(config, first_transport, clock, backoff_store=SqlBackoffStore(session_factory)) as first:
        with pytest.raises(Gps51RateLimitError):
            await first.call("lastposition")

    with session_scope(session_factory) as session:
        assert coordination.get_backoff_until(session, "gps51") == start + timedelta(seconds=1)

    async with _client(config, second_transport, clock, backoff_store=SqlBackoffStore(session_factory)) as second:
        await second.call("lastposition")

    assert clock.sleeps == [1.0]
    assert second_transport.calls[0][3] >= start + timedelta(seconds=1)


def test_shared_backoff_never_shortens(session_factory: sessionmaker[Session]) -> None:
    now = datetime(2026, 3, 1, tzinfo=UTC)
    store = SqlBackoffStore(session_factory)

    store.extend_backoff(now + timedelta(seconds=30), now=now)
    store.extend_backoff(now + timedelta(seconds=2), now=now)

    assert store.get_backoff_until() == now + timedelta(seconds=30)


@pytest.mark.asyncio
async def test_local_pacer_enforces_min_interval_and_burst(clock: FakeClock) -> None:
    pacer = LocalPacer(
        RateLimitSettings(min_interval=0.0, burst_calls=5, burst_window=1.0),
        monotonic=clock.monotonic,
        sleep=clock.sleep,
    )
    for _ in range(6):
        await pacer.wait()
    assert clock.sleeps == [1.0]

    spaced = LocalPacer(RateLimitSettings(min_interval=0.2), monotonic=clock.monotonic, sleep=clock.sleep)
    await spaced.wait()
    await spaced.wait()
    assert clock.sleeps[-1] == pytest.approx(0.2)


@pytest.mark.asyncio
async def test_query_devices_flattens_groups(clock: FakeClock) -> None:
    transport = _ScriptedTransport(
        clock,
        {
            "status": 0,
            "groups": [
                {
                    "groupid": 11,
                    "groupname": "Lagos",
                    "devices": [
                        {"deviceid": "D1", "devicename": "Truck 1", "simnum": "0800"},
                        {"deviceid": "", "devicename": "broken"},
                    ],
                },
                {"groupid": 12, "groupname": "Abuja", "devices": [{"deviceid": "D2"}]},
            ],
        },
    )

    async with _client(_config(), transport, clock) as client:
        devices = await client.query_devices()

    assert [d.device_id for d in devices] == ["D1", "D2"]
    assert devices[0].name == "Truck 1"
    assert devices[0].group_id == "11"
    assert devices[1].group_name == "Abuja"
    assert transport.calls[0][2] == {"username": "fleet"}


@pytest.mark.asyncio
async def test_last_positions_returns_raw_records_and_watermark(clock: FakeClock) -> None:
    transport = _ScriptedTransport(
        clock,
        {"status": 0, "records": [{"deviceid": "D1"}, "junk"], "lastquerypositiontime": 1772352000000},
    )

    async with _client(_config(), transport, clock) as client:
        batch = await client.last_positions(["D1"], last_query_time=5)

    assert batch.records == [{"deviceid": "D1"}]
    assert batch.last_query_time == 1772352000000
    assert transport.calls[0][2] == {"deviceids": ["D1"], "lastquerypositiontime": 5}


@pytest.mark.asyncio
async def test_query_trips_sends_vendor_local_window(clock: FakeClock) -> None:
    transport = _ScriptedTransport(
        clock,
        {"status": 0, "totaltrips": [{"starttime": 1772323200000, "endtime": 1772326800000, "distance": 5200}]},
    )
    begin = datetime(2026, 3, 1, 0, 0, tzinfo=UTC)

    async with _client(_config(), transport, clock) as client:
        trips = await client.query_trips("D1", begin, begin + timedelta(hours=2))

    assert len(trips) == 1
    assert trips[0].distance_m == 5200
    body = transport.calls[0][2]
    assert body["begintime"] == "2026-03-01 08:00:00"
    assert body["endtime"] == "2026-03-01 10:00:00"
    assert body["timezone"] == 8


@pytest.mark.asyncio
async def test_query_tracks_reads_both_payload_shapes(clock: FakeClock) -> None:
    point = {"gpstime": 1772323200000, "callat": 6.5, "callon": 3.3}
    transport = _ScriptedTransport(
        clock,
        {"status": 0, "records": [point, "junk"]},
        {"status": 0, "data": {"records": [point, point]}},
    )
    begin = datetime(2026, 3, 1, 0, 0, tzinfo=UTC)

    async with _client(_config(), transport, clock) as client:
        first = await client.query_tracks("D1", begin, begin + timedelta(days=1))
        second = await client.query_tracks("D1", begin, begin + timedelta(days=1))

    assert first == [point]
    assert len(second) == 2
    action, _, body, _ = transport.calls[0]
    assert action == "querytrack"
    assert body == {
        "deviceid": "D1",
        "starttime": "2026-03-01 08:00:00",
        "endtime": "2026-03-02 08:00:00",
        "coordsys": "wgs84",
    }


@pytest.mark.asyncio
async def test_stored_credentials_are_read_from_the_store(
    clock: FakeClock, session_factory: sessionmaker[Session]
) -> None:
    with session_scope(session_factory) as session:
        coordination.store_credential(
            session, token="db-token", server_id="3", username=None, expires_at=None, now=clock.now
        )
    transport = _ScriptedTransport(clock, {"status": 0})

    async with _client(Gps51Config(), transport, clock, credentials=StoredCredentials(session_factory)) as client:
        await client.call("lastposition")

    assert transport.calls[0][1] == {"token": "db-token", "serverid": "3"}
