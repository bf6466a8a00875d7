"""Controller-to-device stream mappings with per-device and per-controller limits."""

from __future__ import annotations

import dataclasses
import itertools
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any


@dataclass
class StreamConfig:
    """Limits and timeouts for controller streams."""

    idle_timeout_seconds: int = 300
    max_active_streams: int = 10
    max_concurrent_streams_per_controller: int = 100


@dataclass
class StreamMapping:
    """One controller stream targeting one device."""

    stream_id: str
    device_id: str
    controller_id: str
    method_name: str
    created_at: float
    last_activity: float
    active_requests: int = 0
    controller_tx: Any = None


class StreamRouterErrorKind(Enum):
    """Why a stream could not be routed."""

    MAX_STREAMS_EXCEEDED = "max streams exceeded"
    DEVICE_OFFLINE = "device offline"
    INTERNAL = "internal error"

    def __str__(self) -> str:
        return self.value


class StreamRouterError(Exception):
    """A stream mapping could not be created."""

    def __init__(self, kind: StreamRouterErrorKind, message: str) -> None:
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message


def _discard(index: dict[str, dict[str, None]], key: str, stream_id: str) -> None:
    streams = index.get(key)
    if streams is None:
        return
    streams.pop(stream_id, None)
    if not streams:
        del index[key]


class StreamRouter:
    """Tracks stream mappings by stream id, device id and controller id."""

    def __init__(self, config: StreamConfig) -> None:
        self._ids = itertools.count(1)
        self._mappings: dict[str, StreamMapping] = {}
        # Ordered sets of stream ids, keyed by device and by controller.
        self._device_to_streams: dict[str, dict[str, None]] = {}
        self._controller_to_streams: dict[str, dict[str, None]] = {}
        self.max_active_streams = config.max_active_streams
        self.max_concurrent_streams_per_controller = config.max_concurrent_streams_per_controller
        self.idle_timeout = float(config.idle_timeout_seconds)
        self._lock = threading.RLock()

    def cleanup_interval(self) -> float:
        """Seconds between stale-stream sweeps: the idle timeout, at least one second."""
        return max(self.idle_timeout, 1.0)

    def create_mapping(
        self, device_id: str, controller_id: str, method_name: str, controller_tx: Any
    ) -> str:
        """Register a new stream and return its id.

        Raises StreamRouterError when the device or the controller already has
        as many streams as allowed.
        """
        with self._lock:
            stream_id = f"strm-{next(self._ids)}"
            now = time.monotonic()
            mapping = StreamMapping(
                stream_id=stream_id,
                device_id=device_id,
                controller_id=controller_id,
                method_name=method_name,
                created_at=now,
                last_activity=now,
                active_requests=0,
                controller_tx=controller_tx,
            )

            device_streams = self._device_to_streams.get(device_id)
            if device_streams is None:
                self._device_to_streams[device_id] = {stream_id: None}
            else:
                current = len(device_streams)
                if current >= self.max_active_streams:
                    raise StreamRouterError(
                        StreamRouterErrorKind.MAX_STREAMS_EXCEEDED,
                        f"device {device_id} has {current} active streams "
                        f"(max: {self.max_active_streams})",
                    )
                device_streams[stream_id] = None

            controller_streams = self._controller_to_streams.get(controller_id)
            if controller_streams is None:
                self._controller_to_streams[controller_id] = {stream_id: None}
            else:
                current = len(controller_streams)
                if current >= self.max_concurrent_streams_per_controller:
                    _discard(self._device_to_streams, device_id, stream_id)
                    raise StreamRouterError(
                        StreamRouterErrorKind.MAX_STREAMS_EXCEEDED,
                        f"controller {controller_id} has {current} active streams "
                        f"(max: {self.max_concurrent_streams_per_controller})",
                    )
                controller_streams[stream_id] = None

            self._mappings[stream_id] = mapping
            return stream_id

    def remove_mapping(self, stream_id: str) -> StreamMapping | None:
        """Remove one stream; return its mapping, or None if unknown."""
        with self._lock:
            mapping = self._mappings.pop(stream_id, None)
            if mapping is None:
                return None
            _discard(self._device_to_streams, mapping.device_id, stream_id)
            _discard(self._controller_to_streams, mapping.controller_id, stream_id)
            return mapping

    def remove_all_for_device(self, device_id: str) -> list[StreamMapping]:
        """Remove every stream of a device, returning the removed mappings."""
        with self._lock:
            stream_ids = self._device_to_streams.pop(device_id, None)
            if stream_ids is None:
                return []
            removed = []
            for sid in stream_ids:
                mapping = self._mappings.pop(sid, None)
                if mapping is not None:
                    _discard(self._controller_to_streams, mapping.controller_id, sid)
                    removed.append(mapping)
            return removed

    def get_mappings_for_device(self, device_id: str) -> list[StreamMapping]:
        """Copies of all active mappings for a device."""
        with self._lock:
            stream_ids = list(self._device_to_streams.get(device_id, ()))
            return [
                dataclasses.replace(self._mappings[sid])
                for sid in stream_ids
                if sid in self._mappings
            ]

    def device_stream_count(self, device_id: str) -> int:
        with self._lock:
            return len(self._device_to_streams.get(device_id, ()))

    def total_active_streams(self) -> int:
        with self._lock:
            return len(self._mappings)

    def has_active_streams(self, device_id: str) -> bool:
        return self.device_stream_count(device_id) > 0

    def touch_stream(self, stream_id: str) -> None:
        """Mark a stream as active now."""
        with self._lock:
            mapping = self._mappings.get(stream_id)
            if mapping is not None:
                mapping.last_activity = time.monotonic()

    def begin_request(self, stream_id: str) -> None:
        """Note that a request started on a stream."""
        with self._lock:
            mapping = self._mappings.get(stream_id)
            if mapping is not None:
                mapping.last_activity = time.monotonic()
                mapping.active_requests += 1

    def finish_request(self, stream_id: str) -> None:
        """Note that a request on a stream finished."""
        with self._lock:
            mapping = self._mappings.get(stream_id)
            if mapping is not None:
                mapping.last_activity = time.monotonic()
                mapping.active_requests = max(0, mapping.active_requests - 1)

    def cleanup_stale(self) -> list[StreamMapping]:
        """Remove streams idle past the timeout with no request in progress."""
        with self._lock:
            now = time.monotonic()
            stale = [
                m.stream_id
                for m in self._mappings.values()
                if m.active_requests == 0 and max(0.0, now - m.last_activity) >= self.idle_timeout
            ]
            removed = (self.remove_mapping(sid) for sid in stale)
            return [m for m in removed if m is not None]