"""Vendor credential state used to authenticate openapi calls.

GPS51 tokens are issued and refreshed out-of-band; pygps51 only reads them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy.orm import Session, sessionmaker

from pygps51.models._base import ensure_utc
from pygps51.storage.coordination import latest_credential
from pygps51.storage.database import session_scope


class Gps51Session(BaseModel):
    """Credential snapshot.

    Parameters
    ----------
    token : str
        Vendor access token, sent as the ``token`` query parameter.
    server_id : str
        GPS51 server id, sent as ``serverid``.
    username : str or None
        Account name; required by ``querymonitorlist``.
    expires_at : datetime or None
        Local expiry.  ``None`` means unknown; the server decides.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    token: str
    server_id: str = "1"
    username: str | None = None
    expires_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime | None) -> datetime | None:
        return None if value is None else ensure_utc(value)

    def is_expired(self, now: datetime) -> bool:
        """Whether the token is past its known expiry at *now*."""
        return self.expires_at is not None and now >= self.expires_at


class CredentialSource(Protocol):
    """Where the client reads its current credential from."""

    def current(self) -> Gps51Session | None: ...


class StaticCredentials:
    """A fixed credential, typically from ``GPS51_TOKEN``."""

    def __init__(self, session: Gps51Session) -> None:
        self._session = session

    def current(self) -> Gps51Session | None:
        return self._session


class StoredCredentials:
    """Reads the newest row of the ``credentials`` table on every call."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def current(self) -> Gps51Session | None:
        with session_scope(self._session_factory) as db:
            row = latest_credential(db)
            if row is None:
                return None
            return Gps51Session(
                token=row.token,
                server_id=row.server_id,
                username=row.username,
                expires_at=row.expires_at,
            )
