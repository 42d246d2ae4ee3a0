"""Pydantic models for printer discovery."""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from sdcp.models import InboundModel, text_or_empty


class DeviceRecord(BaseModel):
    """A printer that answered the discovery broadcast."""
    address: str
    name: str = ""
    model: str = ""
    identity: str = ""
    last_seen: float = 0.0  # Unix timestamp


class ReplyAttributes(InboundModel):
    name: str = Field("", alias="Name")
    machine_name: str = Field("", alias="MachineName")

    @field_validator("name", "machine_name", mode="before")
    @classmethod
    def _to_str(cls, v: Any) -> str:
        return text_or_empty(v)


class ReplyData(InboundModel):
    attributes: ReplyAttributes = Field(default_factory=ReplyAttributes, alias="Attributes")


class DiscoveryReply(InboundModel):
    """
    The JSON a printer sends back to the discovery broadcast.

    Any well-formed JSON object is accepted; missing, null or non-string
    fields read as empty.
    """
    id: str = Field("", alias="Id")
    data: ReplyData = Field(default_factory=ReplyData, alias="Data")

    @field_validator("id", mode="before")
    @classmethod
    def _to_str(cls, v: Any) -> str:
        return text_or_empty(v)
