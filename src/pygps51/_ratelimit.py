"""Upstream call budget: local pacing plus a shared backoff deadline.

GPS51 enforces a per-IP quota.  Every worker paces its own calls
(:class:`LocalPacer`) and all workers honour a single ``backoff_until``
deadline kept in the relational store (:class:`SqlBackoffStore`), so one
worker hitting the limit slows down everyone without any in-process lock.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Protocol

from sqlalchemy.orm import Session, sessionmaker

from pygps51._constants import RATE_LIMIT_KEY
from pygps51.config import RateLimitSettings
from pygps51.storage.coordination import extend_backoff, get_backoff_until, record_call
from pygps51.storage.database import session_scope

_logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, settings: RateLimitSettings) -> float:
    """Exponential backoff for retry *attempt* (0-based), capped at ``max_backoff``."""
    delay = settings.initial_backoff * (settings.backoff_multiplier ** max(0, attempt))
    return min(delay, settings.max_backoff)


class BackoffStore(Protocol):
    """Shared coordination record.  Implementations must never shorten a deadline."""

    def get_backoff_until(self) -> datetime | None: ...

    def extend_backoff(self, until: datetime, *, now: datetime) -> None: ...

    def record_call(self, now: datetime) -> None: ...


class SqlBackoffStore:
    """:class:`BackoffStore` backed by the ``rate_limit_state`` table."""

    def __init__(self, session_factory: sessionmaker[Session], key: str = RATE_LIMIT_KEY) -> None:
        self._session_factory = session_factory
        self._key = key

    def get_backoff_until(self) -> datetime | None:
        with session_scope(self._session_factory) as session:
            return get_backoff_until(session, self._key)

    def extend_backoff(self, until: datetime, *, now: datetime) -> None:
        with session_scope(self._session_factory) as session:
            changed = extend_backoff(session, self._key, until, now=now)
        if changed:
            _logger.warning("Shared backoff extended to %s", until.isoformat())

    def record_call(self, now: datetime) -> None:
        with session_scope(self._session_factory) as session:
            record_call(session, self._key, now=now)


class MemoryBackoffStore:
    """Process-local :class:`BackoffStore` for single-worker use and tests."""

    def __init__(self) -> None:
        self.backoff_until: datetime | None = None
        self.last_call_at: datetime | None = None

    def get_backoff_until(self) -> datetime | None:
        return self.backoff_until

    def extend_backoff(self, until: datetime, *, now: datetime) -> None:
        if self.backoff_until is None or until > self.backoff_until:
            self.backoff_until = until

    def record_call(self, now: datetime) -> None:
        self.last_call_at = now


class LocalPacer:
    """Per-client pacing: a minimum gap between calls and a rolling burst cap.

    State lives on the instance only; two clients never share a pacer.
    """

    def __init__(
        self,
        settings: RateLimitSettings,
        *,
        monotonic: Callable[[], float],
        sleep: Sleep,
    ) -> None:
        self._settings = settings
        self._monotonic = monotonic
        self._sleep = sleep
        self._recent: deque[float] = deque()

    def _required_delay(self, now: float) -> float:
        window = self._settings.burst_window
        while self._recent and now - self._recent[0] >= window:
            self._recent.popleft()

        delay = 0.0
        if self._recent:
            delay = max(delay, self._settings.min_interval - (now - self._recent[-1]))
        if len(self._recent) >= self._settings.burst_calls:
            oldest = self._recent[len(self._recent) - self._settings.burst_calls]
            delay = max(delay, window - (now - oldest))
        return max(0.0, delay)

    async def wait(self) -> None:
        """Sleep until the next call is allowed, then reserve the slot."""
        delay = self._required_delay(self._monotonic())
        if delay > 0:
            await self._sleep(delay)
        self._recent.append(self._monotonic())
