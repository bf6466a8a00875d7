"""In-memory relay state: device sessions, in-flight requests and counters."""

from __future__ import annotations

import itertools
import threading
import time
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from typing import Any

from grpc_relay.messages import DeviceInfo, DeviceResponse


@dataclass
class DeviceSession:
    """A connected device and the channel used to reach it."""

    device_id: str
    connection_id: str
    metadata: dict[str, str] = field(default_factory=dict)
    outbound: Any = None


class InFlight:
    """A request forwarded to a device, with every caller waiting on its response."""

    def __init__(self, device_id: str = "") -> None:
        self.device_id = device_id
        self._waiters: list[Future] = []
        self._lock = threading.Lock()

    def push_waiter(self, waiter: Future) -> None:
        """Register a future to be resolved when the response arrives."""
        with self._lock:
            self._waiters.append(waiter)

    def complete(self, response: DeviceResponse) -> None:
        """Resolve all pending waiters with the response."""
        with self._lock:
            waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            try:
                waiter.set_result(response)
            except InvalidStateError:
                pass

    @property
    def waiter_count(self) -> int:
        with self._lock:
            return len(self._waiters)


class RelayState:
    """Shared relay state, safe to use from several threads."""

    def __init__(self) -> None:
        self.sessions_by_device_id: dict[str, DeviceSession] = {}
        self.connection_to_device_id: dict[str, str] = {}
        self.inflight_by_sequence: dict[tuple[str, int], InFlight] = {}
        self.device_last_seen: dict[str, float] = {}
        self._connection_ids = itertools.count(1)
        self._controller_connections = 0
        self._lock = threading.RLock()

    def next_connection_id(self) -> str:
        with self._lock:
            return f"conn-{next(self._connection_ids)}"

    def list_online_devices(self) -> list[DeviceInfo]:
        with self._lock:
            sessions = list(self.sessions_by_device_id.values())
        return [
            DeviceInfo(
                device_id=s.device_id,
                connection_id=s.connection_id,
                relay_address="",
                connected_at=0,
                metadata=dict(s.metadata),
            )
            for s in sessions
        ]

    def ensure_inflight_waiter(self, sequence_number: int, device_id: str) -> tuple[Future, bool]:
        """Return a future for the response and whether the caller must forward the request.

        The flag is True for the first caller of a (device, sequence) pair; later
        callers just wait on the same response.
        """
        key = (device_id, sequence_number)
        waiter: Future = Future()
        with self._lock:
            inflight = self.inflight_by_sequence.get(key)
            is_new = inflight is None
            if inflight is None:
                inflight = InFlight(device_id)
                self.inflight_by_sequence[key] = inflight
            inflight.push_waiter(waiter)
        return waiter, is_new

    def take_inflight(self, device_id: str, sequence_number: int) -> InFlight | None:
        with self._lock:
            return self.inflight_by_sequence.pop((device_id, sequence_number), None)

    def device_id_for_connection(self, connection_id: str) -> str | None:
        return self.connection_to_device_id.get(connection_id)

    def has_active_device_connection(self, device_id: str, connection_id: str) -> bool:
        session = self.sessions_by_device_id.get(device_id)
        return session is not None and session.connection_id == connection_id

    def touch_device(self, device_id: str) -> None:
        self.device_last_seen[device_id] = time.monotonic()

    def device_last_seen_seconds(self, device_id: str) -> int | None:
        seen = self.device_last_seen.get(device_id)
        if seen is None:
            return None
        return int(max(0.0, time.monotonic() - seen))

    def remove_device_session(self, device_id: str) -> DeviceSession | None:
        with self._lock:
            session = self.sessions_by_device_id.pop(device_id, None)
            if session is None:
                return None
            self.connection_to_device_id.pop(session.connection_id, None)
            self.device_last_seen.pop(device_id, None)
            return session

    def take_inflight_for_device(self, device_id: str) -> list[tuple[int, InFlight]]:
        with self._lock:
            keys = [
                key
                for key, inflight in self.inflight_by_sequence.items()
                if inflight.device_id == device_id
            ]
            return [(seq, self.inflight_by_sequence.pop((dev, seq))) for dev, seq in keys]

    def increment_controller_connections(self) -> None:
        with self._lock:
            self._controller_connections += 1

    def decrement_controller_connections(self) -> None:
        with self._lock:
            self._controller_connections = max(0, self._controller_connections - 1)

    def controller_connection_count(self) -> int:
        with self._lock:
            return self._controller_connections