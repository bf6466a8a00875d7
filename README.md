# grpc_relay

The in-process core of a relay that sits between controllers and devices.
Devices hold a long-lived connection to the relay; controllers send requests
to a device through the relay and get the device's answers back. This package
holds the pieces that decide and record what happens on the way.

Python 3.10 or newer is required. The package depends on psutil, paho-mqtt
(2.0 or newer) and aiohttp.

## Modules

- `grpc_relay.messages`: the message shapes `DeviceInfo`, `DeviceResponse`,
  `DataRequest`, `RegisterResponse`, `HeartbeatResponse` and `RelayMessage`,
  the `ErrorCode` enum, and helpers that build them
  (`make_error_response`, `device_response_from_device_data`,
  `relay_message_data_request`, `relay_message_register_response`,
  `relay_message_heartbeat_response`).
- `grpc_relay.state`: `RelayState`, a thread-safe record of device sessions
  (`DeviceSession`), connection-to-device mappings, last-seen times, the
  controller connection count and in-flight requests (`InFlight`).
  `ensure_inflight_waiter(sequence_number, device_id)` returns a
  `concurrent.futures.Future` and a flag that is `True` only for the first
  caller of a device/sequence pair, so duplicate requests are forwarded once
  and all callers receive the same response through `InFlight.complete`.
  Connection ids come out as `conn-1`, `conn-2`, ...
- `grpc_relay.session`: `SessionRegistry`, lookups over a `RelayState`
  (`get_device_session`, `is_device_online`, `online_device_count`,
  `list_online_devices`) and `device_offline_response`.
- `grpc_relay.validator`: checks on controller ids, device ids (non-blank, at
  most 64 bytes), method names (ASCII letters, digits, `_`, `.`, `/`),
  payload size (at most 10 MiB) and sequence numbers (positive). A failed
  check raises `ValidationError`, a `ValueError` carrying an `ErrorCode` in
  `code`.
- `grpc_relay.rbac`: `RbacPolicyEngine` with a method whitelist (an empty list
  allows every method). `authorize_controller_to_device` raises
  `MethodNotAllowed` or `DeviceProjectForbidden`, both subclasses of
  `AuthorizationError`. The role `"admin"` reaches any device; other roles
  only devices whose project is in their `allowed_project_ids`. A disabled
  engine allows everything.
- `grpc_relay.rate_limiter`: `RateLimitConfig`; `RateLimiter`, token buckets
  applied globally, per device and per controller; `ConnectionRateLimiter`,
  sliding windows over connection attempts per device (one minute) and
  globally (one second); `BandwidthTracker`, byte counts in one-second
  windows.
- `grpc_relay.resource_monitor`: `ResourceMonitor`, CPU and memory readings
  from psutil and `is_healthy()` against the configured thresholds.
- `grpc_relay.stream`: `StreamRouter`, which maps controller streams to
  devices, enforces the per-device and per-controller stream limits, and
  removes streams that have been idle too long.
- `grpc_relay.relay_metrics`: small `Counter`, `Gauge`, `Histogram`,
  `MetricVec` and `Registry` types, and `RelayMetrics`, which registers every
  relay metric and encodes them in the Prometheus text exposition format.
- `grpc_relay.security_metrics`: `SecurityMetrics`, counters of
  authentication, authorization, rate-limit and revoked-token events, with
  ratios against all authentication attempts in `snapshot()`. After
  `attach_relay_metrics`, every event also increments the matching
  `RelayMetrics` counter.
- `grpc_relay.mqtt`: device presence and relay telemetry over MQTT.
- `grpc_relay.observability`: aiohttp health and metrics endpoints.

## Validating a controller request

```python
from grpc_relay.messages import ErrorCode
from grpc_relay.validator import ValidationError, validate_controller_message

validate_controller_message("ctrl-123", "dev-456", "ExecuteCommand", b"\x00" * 100, 1)

try:
    validate_controller_message("ctrl-123", "dev-456", "hello world", b"", 1)
except ValidationError as err:
    assert err.code == ErrorCode.INTERNAL_ERROR
```

## Rate limiting

```python
from grpc_relay.rate_limiter import RateLimitConfig, RateLimiter

config = RateLimitConfig(
    device_requests_per_second=2,
    controller_requests_per_minute=60_000,
    global_requests_per_second=100_000,
)
limiter = RateLimiter(config)

assert limiter.allow("dev-1", "ctrl-1")
assert limiter.allow("dev-1", "ctrl-1")
assert not limiter.allow("dev-1", "ctrl-1")   # the device's bucket is empty
assert limiter.allow("dev-2", "ctrl-1")       # each device has its own bucket
```

Controller limits are given per minute and turned into a rate per second. A
rate of zero rejects every request. Buckets untouched for five minutes are
dropped now and then.

## Routing streams

```python
from grpc_relay.stream import StreamConfig, StreamRouter, StreamRouterError

router = StreamRouter(
    StreamConfig(
        idle_timeout_seconds=300,
        max_active_streams=10,
        max_concurrent_streams_per_controller=100,
    )
)

stream_id = router.create_mapping("dev-1", "ctrl-1", "ExecuteCommand", controller_tx=None)
assert router.device_stream_count("dev-1") == 1

router.begin_request(stream_id)    # streams with requests in progress are never idle
router.finish_request(stream_id)

for mapping in router.remove_all_for_device("dev-1"):
    print("notify", mapping.controller_id, "that", mapping.device_id, "went away")
```

When a limit is reached, `create_mapping` raises `StreamRouterError` with
`kind` set to `StreamRouterErrorKind.MAX_STREAMS_EXCEEDED`. `cleanup_stale()`
removes and returns streams that have had no activity for the idle timeout
and no request in progress.

## MQTT presence and telemetry

`spawn_mqtt_publisher(config, relay_id, relay_address, relay_state,
resource_monitor, runtime)` starts a background thread and returns
`MqttHandles` with a `publisher`, the `runtime` state and the `worker` thread.

- `publisher.publish_device_online(...)` and `publish_device_offline(...)`
  never block: events go into a queue of 256; when it is full, or after
  `publisher.close()`, the event is dropped and counted in
  `runtime.dropped_total`.
- Online events go to `relay/device/online` (QoS 1, retained), offline events
  to `relay/device/offline` (QoS 1). On every connection the worker first
  announces each session already in `relay_state`.
- Telemetry goes to `telemetry/relay/{relay_id}` (QoS 0) every
  `telemetry_interval_seconds`, built by `build_relay_telemetry_payload`.
- A failed session is retried after `backoff_seconds(attempt, initial,
  maximum)`: the initial delay doubled per attempt, capped at the maximum.
- `parse_host_port` accepts `host:port`, `mqtt://host:port` and `[::1]:port`
  and raises `ValueError` otherwise.

`MqttRuntimeState` exposes `enabled`, `is_connected`, `reconnect_count`,
`dropped_total` and `queue_pending`.

## Health and metrics endpoints

`create_app(config, state)` builds an aiohttp application from a
`HealthConfig` and a `HealthState`; `serve_health(config, state)` serves it
until cancelled, and returns at once when `config.enabled` is false. The
address must be an IP literal with a port, such as `0.0.0.0:8080` or
`[::1]:8080`.

- `config.path` (default `/health`): the health document.
- `/health/live`: always 200.
- `/health/ready`: 503 while the relay is unhealthy, else 200.
- `/health/startup`: 503 until `startup_complete` is true.
- `/metrics`: refreshes the runtime gauges, then returns the encoded metrics.
- `/metrics/security`: the `SecurityMetrics` snapshot as JSON.

`derive_overall_status` combines the components: any `"unhealthy"` or
unrecognised status makes the relay `"unhealthy"`; otherwise any
`"degraded"` makes it `"degraded"`; otherwise it is `"healthy"`. MQTT counts
as healthy when disabled or connected and degraded when disconnected.

## What this package does not do

It contains no gRPC or QUIC server, no token or JWT authentication, no
configuration loading and no command-line program. The QUIC listener
component is always reported as degraded, so the overall health status is at
best `"degraded"`. Those pieces, and the wiring that connects everything, are
left to the application that uses this package.

## Running the tests

Install the package with its `test` extra; the tests are written for pytest
and pytest-asyncio.