"""Read-only view of the relay state for looking up device sessions."""

from __future__ import annotations

import dataclasses

from grpc_relay.messages import DeviceInfo, DeviceResponse, ErrorCode
from grpc_relay.state import DeviceSession, RelayState


class SessionRegistry:
    """Session lookups over a shared RelayState."""

    def __init__(self, state: RelayState) -> None:
        self.state = state

    def get_device_session(self, device_id: str) -> DeviceSession | None:
        """A copy of the device's session, or None if it is offline."""
        session = self.state.sessions_by_device_id.get(device_id)
        if session is None:
            return None
        return dataclasses.replace(session, metadata=dict(session.metadata))

    def is_device_online(self, device_id: str) -> bool:
        return device_id in self.state.sessions_by_device_id

    def online_device_count(self) -> int:
        return len(self.state.sessions_by_device_id)

    def list_online_devices(self, relay_address: str) -> list[DeviceInfo]:
        """Every online device, reported as reachable through this relay."""
        sessions = list(self.state.sessions_by_device_id.values())
        return [
            DeviceInfo(
                device_id=s.device_id,
                connection_id=s.connection_id,
                relay_address=relay_address,
                connected_at=0,
                metadata=dict(s.metadata),
            )
            for s in sessions
        ]

    @staticmethod
    def device_offline_response(device_id: str, seq: int) -> DeviceResponse:
        """A response telling the controller the device is offline."""
        return DeviceResponse(
            device_id=device_id,
            sequence_number=seq,
            encrypted_payload=b"",
            error=int(ErrorCode.DEVICE_OFFLINE),
        )