"""
Pydantic models for SDCP messages.

Inbound shapes carry defaults for every field so a partial status report
still yields a usable snapshot. Numeric fields are normalized: printers
report some of them as numeric strings or single-element lists.
"""

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Cmd:
    GET_STATUS = 0
    GET_ATTRIBUTES = 1
    START_PRINT = 128
    UPLOAD_FILE = 256
    SET_STATUS_INTERVAL = 512


class MachineStatus:
    READY = 0
    BUSY = 1


class PrintStatus:
    IDLE = 0
    EXPOSURE = 2
    RETRACTING = 3
    LOWERING = 4
    COMPLETE = 16


class TransferStatus:
    IDLE = 0
    ACTIVE = 1
    SUCCESS = 2
    ERROR = 3


def _first_number(value: Any, cast):
    if isinstance(value, list):
        value = value[0] if value else 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return cast(0)
    if not math.isfinite(number):
        return cast(0)
    return cast(number)


def text_or_empty(value: Any) -> str:
    return value if isinstance(value, str) else ""


class InboundModel(BaseModel):
    """Base for printer-sent JSON: null fields fall back to their defaults."""

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, values: Any) -> Any:
        if isinstance(values, dict):
            return {k: v for k, v in values.items() if v is not None}
        return values


# --- Status ---

class PrintInfo(InboundModel):
    status: int = Field(0, alias="Status")
    current_layer: int = Field(0, alias="CurrentLayer")
    total_layer: int = Field(0, alias="TotalLayer")
    filename: str = Field("", alias="Filename")

    @field_validator("status", "current_layer", "total_layer", mode="before")
    @classmethod
    def _to_int(cls, v: Any) -> int:
        return _first_number(v, int)


class FileTransferInfo(InboundModel):
    status: int = Field(0, alias="Status")
    download_offset: float = Field(0.0, alias="DownloadOffset")
    file_total_size: float = Field(0.0, alias="FileTotalSize")
    filename: str = Field("", alias="Filename")

    @field_validator("status", mode="before")
    @classmethod
    def _to_int(cls, v: Any) -> int:
        return _first_number(v, int)

    @field_validator("download_offset", "file_total_size", mode="before")
    @classmethod
    def _to_float(cls, v: Any) -> float:
        return _first_number(v, float)


class DeviceStatus(InboundModel):
    current_status: int = Field(0, alias="CurrentStatus")
    print_info: PrintInfo = Field(default_factory=PrintInfo, alias="PrintInfo")
    file_transfer_info: FileTransferInfo = Field(
        default_factory=FileTransferInfo, alias="FileTransferInfo"
    )

    @field_validator("current_status", mode="before")
    @classmethod
    def _to_int(cls, v: Any) -> int:
        return _first_number(v, int)


class Attributes(InboundModel):
    name: str = Field("", alias="Name")
    machine_name: str = Field("", alias="MachineName")


class MessageData(InboundModel):
    status: DeviceStatus = Field(default_factory=DeviceStatus, alias="Status")
    attributes: Attributes = Field(default_factory=Attributes, alias="Attributes")


class DeviceMessage(InboundModel):
    """Any JSON object the printer publishes (status, attributes, responses)."""
    id: str = Field("", alias="Id")
    data: MessageData = Field(default_factory=MessageData, alias="Data")

    @field_validator("id", mode="before")
    @classmethod
    def _to_str(cls, v: Any) -> str:
        return text_or_empty(v)


class StatusSnapshot(BaseModel):
    """Flattened view of one status report."""
    current_status: int = 0
    print_status: int = 0
    transfer_status: int = 0
    current_layer: int = 0
    total_layer: int = 0
    download_offset: float = 0.0
    file_total_size: float = 0.0
    filename: str = ""
    print_filename: str = ""

    @classmethod
    def from_status(cls, status: DeviceStatus) -> "StatusSnapshot":
        return cls(
            current_status=status.current_status,
            print_status=status.print_info.status,
            transfer_status=status.file_transfer_info.status,
            current_layer=status.print_info.current_layer,
            total_layer=status.print_info.total_layer,
            download_offset=status.file_transfer_info.download_offset,
            file_total_size=status.file_transfer_info.file_total_size,
            filename=status.file_transfer_info.filename,
            print_filename=status.print_info.filename,
        )


# --- Outbound ---

class CommandBody(BaseModel):
    Cmd: int
    Data: Any = None
    From: int = 0
    MainboardID: str = ""
    RequestID: str
    TimeStamp: int


class CommandEnvelope(BaseModel):
    """Outbound command wrapper published on the request topic."""
    Data: CommandBody
    Id: str = ""
