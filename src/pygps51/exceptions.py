"""Custom exception hierarchy for pygps51."""

from __future__ import annotations

from typing import Any


class Gps51Error(Exception):
    """Base exception for all pygps51 errors."""


class Gps51ConfigError(Gps51Error):
    """Invalid or missing configuration."""


class Gps51TransportError(Gps51Error):
    """HTTP-level failure (network, timeout, non-200, invalid JSON).

    Always retryable: the client backs off locally and tries again.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class Gps51ApiError(Gps51Error):
    """API returned a non-zero ``status`` (application-level error)."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.code = code
        self.endpoint = endpoint
        super().__init__(message)


class Gps51RateLimitError(Gps51ApiError):
    """Upstream rejected the call because of its per-IP quota (status 8902).

    Raised only after all automatic retries were exhausted.
    """


class Gps51AuthExpiredError(Gps51ApiError):
    """The vendor token is expired or was rejected (status 9903/9906).

    Not retryable until the credential is refreshed out-of-band.  Surfaced
    separately from :class:`Gps51TransportError` so operators can tell
    "upstream is down" from "our credential needs renewal".
    """


class Gps51DataError(Gps51Error):
    """A single raw record could not be turned into a valid domain object."""

    def __init__(self, message: str, *, record: Any = None) -> None:
        self.record = record
        super().__init__(message)


class Gps51StoreError(Gps51Error):
    """The relational store is unavailable; fatal for the current job."""
