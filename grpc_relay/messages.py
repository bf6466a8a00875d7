"""Wire-level message types exchanged between relay, devices and controllers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Union


class ErrorCode(IntEnum):
    """Error codes carried in device responses."""

    OK = 0
    UNAUTHORIZED = 1
    DEVICE_NOT_FOUND = 2
    DEVICE_OFFLINE = 3
    INTERNAL_ERROR = 4


@dataclass(frozen=True)
class DeviceInfo:
    """Description of an online device."""

    device_id: str
    connection_id: str
    relay_address: str = ""
    connected_at: int = 0
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeviceResponse:
    """A response from a device routed back to a controller."""

    device_id: str
    sequence_number: int
    encrypted_payload: bytes = b""
    error: int = int(ErrorCode.OK)


@dataclass(frozen=True)
class DataRequest:
    """A request forwarded from the relay to a device."""

    connection_id: str
    sequence_number: int
    encrypted_payload: bytes = b""


@dataclass(frozen=True)
class RegisterResponse:
    """Acknowledgement of a device registration."""

    connection_id: str
    session_resumed: bool = False
    timestamp: int = 0


@dataclass(frozen=True)
class HeartbeatResponse:
    """Acknowledgement of a device heartbeat."""

    timestamp: int = 0


Payload = Union[DataRequest, RegisterResponse, HeartbeatResponse]


@dataclass(frozen=True)
class RelayMessage:
    """Envelope for messages sent from the relay to a device."""

    payload: Payload | None = None


def device_response_from_device_data(
    device_id: str, seq: int, encrypted_payload: bytes, error: int
) -> DeviceResponse:
    """Map data sent by a device into a controller response."""
    return DeviceResponse(
        device_id=device_id,
        sequence_number=seq,
        encrypted_payload=bytes(encrypted_payload),
        error=int(error),
    )


def make_error_response(device_id: str, seq: int, err: ErrorCode) -> DeviceResponse:
    """Build a response carrying only an error code."""
    return DeviceResponse(
        device_id=device_id,
        sequence_number=seq,
        encrypted_payload=b"",
        error=int(err),
    )


def relay_message_data_request(
    connection_id: str, sequence_number: int, encrypted_payload: bytes
) -> RelayMessage:
    """Wrap a data request in a relay message."""
    return RelayMessage(
        payload=DataRequest(
            connection_id=connection_id,
            sequence_number=sequence_number,
            encrypted_payload=bytes(encrypted_payload),
        )
    )


def relay_message_register_response(connection_id: str, session_resumed: bool) -> RelayMessage:
    """Wrap a registration acknowledgement in a relay message."""
    return RelayMessage(
        payload=RegisterResponse(
            connection_id=connection_id,
            session_resumed=session_resumed,
            timestamp=0,
        )
    )


def relay_message_heartbeat_response() -> RelayMessage:
    """Wrap a heartbeat acknowledgement in a relay message."""
    return RelayMessage(payload=HeartbeatResponse(timestamp=0))