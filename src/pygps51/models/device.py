"""Device model for the ``querymonitorlist`` action."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, field_validator

from pygps51.models._base import Gps51BaseModel, safe_str


class DeviceInfo(Gps51BaseModel):
    """A device as listed under a monitor group.

    ``group_id``/``group_name`` are copied in from the enclosing group by
    :meth:`pygps51.client.Gps51Client.query_devices`.
    """

    device_id: str = Field(validation_alias=AliasChoices("deviceid", "device_id"))
    name: str | None = Field(default=None, validation_alias=AliasChoices("devicename", "name"))
    group_id: str | None = Field(default=None, validation_alias=AliasChoices("groupid", "group_id"))
    group_name: str | None = Field(default=None, validation_alias=AliasChoices("groupname", "group_name"))
    device_type: str | None = Field(default=None, validation_alias=AliasChoices("devicetype", "device_type"))
    sim_number: str | None = Field(default=None, validation_alias=AliasChoices("simnum", "sim_number"))
    owner: str | None = Field(default=None, validation_alias=AliasChoices("creater", "owner"))

    @field_validator("device_id", mode="before")
    @classmethod
    def _coerce_device_id(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("deviceid must be non-empty")
        return text

    @field_validator("name", "group_id", "group_name", "device_type", "sim_number", "owner", mode="before")
    @classmethod
    def _coerce_strs(cls, value: Any) -> str | None:
        return safe_str(value)
