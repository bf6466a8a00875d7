"""MQTT publishing of relay telemetry and device online/offline events."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

import paho.mqtt.client as mqtt

from grpc_relay.resource_monitor import ResourceMonitor
from grpc_relay.state import RelayState

logger = logging.getLogger(__name__)

MQTT_PUBLISH_QUEUE_CAPACITY = 256
ONLINE_TOPIC = "relay/device/online"
OFFLINE_TOPIC = "relay/device/offline"

_KEEP_ALIVE_SECONDS = 30
_POLL_SECONDS = 0.1
_MAX_BACKOFF_EXPONENT = 20


@dataclass
class MqttConfig:
    """Broker connection, reconnect and telemetry settings."""

    enabled: bool = False
    broker_address: str = "localhost:1883"
    client_id: str | None = None
    username: str | None = None
    password: str | None = None
    reconnect_initial_seconds: int = 1
    reconnect_max_seconds: int = 60
    telemetry_interval_seconds: int = 10


@dataclass(frozen=True)
class DeviceOnline:
    """Request to announce that a device came online."""

    device_id: str
    connection_id: str
    relay_address: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeviceOffline:
    """Request to announce that a device went offline."""

    device_id: str
    connection_id: str
    reason: str


PublishRequest = Union[DeviceOnline, DeviceOffline]


class MqttRuntimeState:
    """Thread-safe view of the MQTT connection and queue counters."""

    def __init__(self, enabled: bool) -> None:
        self._enabled = enabled
        self._connected = False
        self._reconnect_count = 0
        self._dropped_total = 0
        self._queue_pending = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    @property
    def reconnect_count(self) -> int:
        with self._lock:
            return self._reconnect_count

    @property
    def dropped_total(self) -> int:
        with self._lock:
            return self._dropped_total

    @property
    def queue_pending(self) -> int:
        with self._lock:
            return self._queue_pending

    def set_connected(self, value: bool) -> None:
        with self._lock:
            self._connected = bool(value)

    def increment_reconnect_count(self) -> None:
        with self._lock:
            self._reconnect_count += 1

    def increment_dropped_total(self) -> None:
        with self._lock:
            self._dropped_total += 1

    def increment_queue_pending(self) -> None:
        with self._lock:
            self._queue_pending += 1

    def decrement_queue_pending(self) -> None:
        with self._lock:
            self._queue_pending = max(0, self._queue_pending - 1)


class MqttPublisher:
    """Non-blocking handle for queueing device events.

    Events go into a bounded queue; when it is full, or the publisher is
    closed, the event is dropped and counted.
    """

    def __init__(
        self, runtime: MqttRuntimeState, capacity: int = MQTT_PUBLISH_QUEUE_CAPACITY
    ) -> None:
        self.runtime = runtime
        self.requests: queue.Queue[PublishRequest] = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()

    @property
    def is_connected(self) -> bool:
        return self.runtime.is_connected

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def mqtt_dropped_total(self) -> int:
        return self.runtime.dropped_total

    def publish_device_online(
        self,
        device_id: str,
        connection_id: str,
        relay_address: str,
        metadata: dict[str, str],
    ) -> None:
        self._enqueue(DeviceOnline(device_id, connection_id, relay_address, dict(metadata)))

    def publish_device_offline(self, device_id: str, connection_id: str, reason: str) -> None:
        self._enqueue(DeviceOffline(device_id, connection_id, reason))

    def close(self) -> None:
        """Stop accepting events and let the background worker finish."""
        self._closed.set()

    def wait_closed(self, timeout: float) -> bool:
        """Block until closed or the timeout passes; True if closed."""
        return self._closed.wait(timeout)

    def _enqueue(self, request: PublishRequest) -> None:
        if self._closed.is_set():
            self.runtime.increment_dropped_total()
            return
        self.runtime.increment_queue_pending()
        try:
            self.requests.put_nowait(request)
        except queue.Full:
            self.runtime.decrement_queue_pending()
            self.runtime.increment_dropped_total()


@dataclass
class MqttHandles:
    """What spawning the MQTT worker hands back."""

    publisher: MqttPublisher
    runtime: MqttRuntimeState
    worker: threading.Thread


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _to_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def _parse_port(text: str) -> int:
    digits = text[1:] if text.startswith("+") else text
    if not digits or not (digits.isascii() and digits.isdigit()) or int(digits) > 65535:
        raise ValueError("broker_address port must be a number")
    return int(digits)


def parse_host_port(broker_address: str) -> tuple[str, int]:
    """Split a broker address such as ``mqtt://host:1883`` or ``[::1]:1883``.

    Raises ValueError when the host or port is missing or malformed.
    """
    _, sep, rest = broker_address.partition("://")
    authority = (rest if sep else broker_address).split("/", 1)[0]
    authority = authority.rsplit("@", 1)[-1]

    if not authority:
        raise ValueError("broker_address missing host")

    if authority.startswith("["):
        host, bracket, suffix = authority[1:].partition("]")
        if not bracket:
            raise ValueError("broker_address has invalid IPv6 format")
        if not suffix.startswith(":"):
            raise ValueError("broker_address missing port")
        return host, _parse_port(suffix[1:])

    host, colon, port_text = authority.rpartition(":")
    if not colon:
        raise ValueError("broker_address missing port")
    if not host:
        raise ValueError("broker_address missing host")
    if ":" in host:
        raise ValueError("IPv6 broker_address must use [host]:port format")
    return host, _parse_port(port_text)


def backoff_seconds(attempt: int, initial: int, maximum: int) -> int:
    """Exponential reconnect delay: initial * 2**attempt, capped at maximum."""
    initial = max(1, initial)
    maximum = max(initial, maximum)
    return min(maximum, initial * 2 ** min(attempt, _MAX_BACKOFF_EXPONENT))


def device_event_message(request: PublishRequest) -> tuple[str, dict[str, Any], int, bool]:
    """Topic, payload, QoS and retain flag for a device event."""
    if isinstance(request, DeviceOnline):
        payload = {
            "device_id": request.device_id,
            "connection_id": request.connection_id,
            "relay_address": request.relay_address,
            "timestamp": _now_rfc3339(),
            "metadata": dict(request.metadata),
        }
        return ONLINE_TOPIC, payload, 1, True
    if isinstance(request, DeviceOffline):
        payload = {
            "device_id": request.device_id,
            "connection_id": request.connection_id,
            "timestamp": _now_rfc3339(),
            "reason": request.reason,
        }
        return OFFLINE_TOPIC, payload, 1, False
    raise TypeError(f"unsupported publish request: {request!r}")


def online_session_snapshot(relay_state: RelayState, relay_address: str) -> list[DeviceOnline]:
    """An online event for every session currently registered."""
    sessions = list(relay_state.sessions_by_device_id.values())
    return [
        DeviceOnline(
            device_id=s.device_id,
            connection_id=s.connection_id,
            relay_address=relay_address,
            metadata=dict(s.metadata),
        )
        for s in sessions
    ]


def build_relay_telemetry_payload(
    relay_id: str,
    relay_address: str,
    relay_state: RelayState,
    resource_monitor: ResourceMonitor,
    runtime: MqttRuntimeState,
    mqtt_publish_failures_total: int,
    telemetry_interval_seconds: int,
) -> dict[str, Any]:
    """The periodic relay telemetry document."""
    timestamp = _now_rfc3339()
    cpu_usage_percent = resource_monitor.cpu_usage_percent()
    memory_usage_percent = resource_monitor.memory_usage_percent()
    used_memory_mb = resource_monitor.used_memory_mb()
    resource_healthy = resource_monitor.is_healthy()

    return {
        "relay_id": relay_id,
        "relay_address": relay_address,
        "timestamp": timestamp,
        "system_metrics": {
            "cpu_usage_percent": cpu_usage_percent,
            "memory_usage_percent": memory_usage_percent,
            "used_memory_mb": used_memory_mb,
        },
        "connection_metrics": {
            "active_device_connections": len(relay_state.sessions_by_device_id),
            "active_controller_connections": 0,
        },
        "stream_metrics": {"active_streams": 0},
        "performance_metrics": {"resource_healthy": resource_healthy},
        "error_metrics": {"mqtt_publish_failures_total": mqtt_publish_failures_total},
        "queue_metrics": {"mqtt_queue_pending": runtime.queue_pending},
        "mqtt_metrics": {
            "telemetry_interval_seconds": telemetry_interval_seconds,
            "mqtt_connected": runtime.is_connected,
            "mqtt_reconnect_count": runtime.reconnect_count,
            "mqtt_dropped_total": runtime.dropped_total,
        },
        "health_status": "healthy" if resource_healthy else "unhealthy",
    }


class _SessionError(Exception):
    """An MQTT session ended with an error and should be retried."""


class _MqttWorker:
    """Background loop: connect, publish, and reconnect with backoff."""

    def __init__(
        self,
        config: MqttConfig,
        relay_id: str,
        relay_address: str,
        relay_state: RelayState,
        resource_monitor: ResourceMonitor,
        runtime: MqttRuntimeState,
        publisher: MqttPublisher,
    ) -> None:
        self._config = config
        self._relay_id = relay_id
        self._relay_address = relay_address
        self._relay_state = relay_state
        self._resource_monitor = resource_monitor
        self._runtime = runtime
        self._publisher = publisher
        self._has_connected_once = False

    def run(self) -> None:
        attempt = 0
        while True:
            if self._publisher.closed:
                self._runtime.set_connected(False)
                return
            try:
                self._run_session()
                attempt = 0
            except Exception as err:  # any session failure is retried
                logger.warning(
                    "mqtt session failed; will retry (relay_id=%s, broker=%s, error=%s)",
                    self._relay_id,
                    self._config.broker_address,
                    err,
                )
                delay = backoff_seconds(
                    attempt,
                    self._config.reconnect_initial_seconds,
                    self._config.reconnect_max_seconds,
                )
                attempt += 1
                self._runtime.set_connected(False)
                self._publisher.wait_closed(delay)

    def _run_session(self) -> None:
        cfg = self._config
        runtime = self._runtime
        host, port = parse_host_port(cfg.broker_address)
        client_id = cfg.client_id if cfg.client_id is not None else f"relay-{self._relay_id}"

        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2, client_id=client_id
        )
        if cfg.username is not None and cfg.password is not None:
            client.username_pw_set(cfg.username, cfg.password)

        acks: list[Any] = []
        client.on_connect = lambda _c, _u, _flags, reason_code, _props: acks.append(reason_code)

        logger.info("mqtt connecting (relay_id=%s, broker=%s)", self._relay_id, cfg.broker_address)
        client.connect(host, port, keepalive=_KEEP_ALIVE_SECONDS)

        interval = max(1, cfg.telemetry_interval_seconds)
        next_tick = time.monotonic()
        pending: deque[PublishRequest] = deque()

        try:
            while True:
                if runtime.is_connected and pending:
                    self._publish_request(client, pending.popleft())
                    continue

                rc = client.loop(timeout=_POLL_SECONDS)
                if rc != mqtt.MQTT_ERR_SUCCESS:
                    runtime.set_connected(False)
                    raise _SessionError(f"mqtt eventloop poll error: {mqtt.error_string(rc)}")

                while acks:
                    self._handle_connack(client, acks.pop(0))

                if self._drain_requests(client, pending):
                    return

                now = time.monotonic()
                if now >= next_tick:
                    while next_tick <= now:
                        next_tick += interval
                    if runtime.is_connected:
                        self._publish_telemetry(client)
        finally:
            client.disconnect()

    def _handle_connack(self, client: mqtt.Client, reason_code: Any) -> None:
        if getattr(reason_code, "is_failure", False):
            self._runtime.set_connected(False)
            raise _SessionError(f"mqtt connection refused: {reason_code}")
        if self._has_connected_once:
            self._runtime.increment_reconnect_count()
        else:
            self._has_connected_once = True
        self._runtime.set_connected(True)
        logger.info(
            "mqtt connected (relay_id=%s, broker=%s)", self._relay_id, self._config.broker_address
        )
        for request in online_session_snapshot(self._relay_state, self._relay_address):
            _publish(client, request)

    def _drain_requests(self, client: mqtt.Client, pending: deque[PublishRequest]) -> bool:
        """Move queued requests out; True once the publisher is closed and drained."""
        runtime = self._runtime
        while True:
            try:
                request = self._publisher.requests.get_nowait()
            except queue.Empty:
                if self._publisher.closed:
                    while pending:
                        pending.popleft()
                        runtime.increment_dropped_total()
                        runtime.decrement_queue_pending()
                    runtime.set_connected(False)
                    return True
                return False
            if runtime.is_connected and not pending:
                self._publish_request(client, request)
            else:
                if len(pending) >= MQTT_PUBLISH_QUEUE_CAPACITY:
                    pending.popleft()
                    runtime.increment_dropped_total()
                    runtime.decrement_queue_pending()
                pending.append(request)

    def _publish_request(self, client: mqtt.Client, request: PublishRequest) -> None:
        try:
            _publish(client, request)
        finally:
            self._runtime.decrement_queue_pending()

    def _publish_telemetry(self, client: mqtt.Client) -> None:
        payload = build_relay_telemetry_payload(
            self._relay_id,
            self._relay_address,
            self._relay_state,
            self._resource_monitor,
            self._runtime,
            0,
            self._config.telemetry_interval_seconds,
        )
        info = client.publish(
            f"telemetry/relay/{self._relay_id}", _to_json(payload), qos=0, retain=False
        )
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._runtime.set_connected(False)
            raise _SessionError(f"mqtt telemetry publish failed: {mqtt.error_string(info.rc)}")


def _publish(client: mqtt.Client, request: PublishRequest) -> None:
    topic, payload, qos, retain = device_event_message(request)
    info = client.publish(topic, _to_json(payload), qos=qos, retain=retain)
    if info.rc != mqtt.MQTT_ERR_SUCCESS:
        raise _SessionError(mqtt.error_string(info.rc))


def spawn_mqtt_publisher(
    config: MqttConfig,
    relay_id: str,
    relay_address: str,
    relay_state: RelayState,
    resource_monitor: ResourceMonitor,
    runtime: MqttRuntimeState,
) -> MqttHandles:
    """Start the MQTT worker thread and return a publisher for device events.

    The worker publishes ``telemetry/relay/{relay_id}`` periodically, forwards
    device online/offline events, and reconnects with exponential backoff.
    """
    publisher = MqttPublisher(runtime)
    worker = _MqttWorker(
        config, relay_id, relay_address, relay_state, resource_monitor, runtime, publisher
    )
    thread = threading.Thread(target=worker.run, name="mqtt-publisher", daemon=True)
    thread.start()
    return MqttHandles(publisher=publisher, runtime=runtime, worker=thread)