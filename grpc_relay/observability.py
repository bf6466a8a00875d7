"""HTTP health, readiness and metrics endpoints for the relay."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from aiohttp import web

from grpc_relay.mqtt import MqttRuntimeState
from grpc_relay.relay_metrics import RelayMetrics
from grpc_relay.resource_monitor import ResourceMonitor
from grpc_relay.security_metrics import SecurityMetrics
from grpc_relay.state import RelayState
from grpc_relay.stream import StreamRouter

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

_STATUS_LEVELS = {HEALTHY: 2, DEGRADED: 1}
_METRICS_CONTENT_TYPE = "text/plain; version=0.0.4"
_STATE_KEY = web.AppKey("health_state", object)


@dataclass
class HealthConfig:
    """Where the health server listens and the path of its main endpoint."""

    enabled: bool = True
    address: str = "0.0.0.0:8080"
    path: str = "/health"


@dataclass(frozen=True)
class ComponentHealth:
    """Status and explanation for one relay component."""

    status: str
    message: str


@dataclass(frozen=True)
class HealthComponents:
    """Health of every component the relay reports on."""

    grpc_server: ComponentHealth
    quic_listener: ComponentHealth
    mqtt_client: ComponentHealth
    auth_service: ComponentHealth
    metrics_collector: ComponentHealth

    def statuses(self) -> list[str]:
        return [
            self.grpc_server.status,
            self.quic_listener.status,
            self.mqtt_client.status,
            self.auth_service.status,
            self.metrics_collector.status,
        ]

    def items(self) -> list[tuple[str, ComponentHealth]]:
        return [
            ("grpc_server", self.grpc_server),
            ("quic_listener", self.quic_listener),
            ("mqtt_client", self.mqtt_client),
            ("auth_service", self.auth_service),
            ("metrics_collector", self.metrics_collector),
        ]


@dataclass
class HealthState:
    """Everything the health endpoints read from."""

    version: str
    security_metrics: SecurityMetrics
    resource_monitor: ResourceMonitor
    mqtt_runtime: MqttRuntimeState
    relay_state: RelayState
    stream_router: StreamRouter
    metrics: RelayMetrics
    startup_complete: bool
    started_at: float = field(default_factory=time.monotonic)


def derive_overall_status(components: HealthComponents) -> str:
    """Unhealthy if any component is unhealthy or unknown, else degraded if any is degraded."""
    has_degraded = False
    for status in components.statuses():
        if status == HEALTHY:
            continue
        if status == DEGRADED:
            has_degraded = True
        else:
            return UNHEALTHY
    return DEGRADED if has_degraded else HEALTHY


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _mqtt_component(runtime: MqttRuntimeState) -> ComponentHealth:
    if not runtime.enabled:
        return ComponentHealth(HEALTHY, "MQTT disabled by config")
    if runtime.is_connected:
        return ComponentHealth(HEALTHY, "MQTT connected")
    return ComponentHealth(DEGRADED, "MQTT disconnected; gRPC discovery fallback required")


def build_health_response(state: HealthState) -> dict[str, Any]:
    """Assemble the health document and refresh the runtime gauges from it."""
    components = HealthComponents(
        grpc_server=ComponentHealth(HEALTHY, "gRPC server running"),
        quic_listener=ComponentHealth(
            DEGRADED, "QUIC listener runtime is not active in this crate"
        ),
        mqtt_client=_mqtt_component(state.mqtt_runtime),
        auth_service=ComponentHealth(HEALTHY, "auth service running"),
        metrics_collector=ComponentHealth(HEALTHY, "metrics collector running"),
    )
    response = {
        "status": derive_overall_status(components),
        "timestamp": _now_rfc3339(),
        "uptime_seconds": int(max(0.0, time.monotonic() - state.started_at)),
        "version": state.version,
        "components": {name: asdict(component) for name, component in components.items()},
        "metrics": {
            "active_device_connections": len(state.relay_state.sessions_by_device_id),
            "active_controller_connections": state.relay_state.controller_connection_count(),
            "active_streams": state.stream_router.total_active_streams(),
            "cpu_usage_percent": state.resource_monitor.cpu_usage_percent(),
            "memory_usage_percent": state.resource_monitor.memory_usage_percent(),
        },
    }
    _refresh_runtime_metrics(state, response, components)
    return response


def _refresh_runtime_metrics(
    state: HealthState, response: dict[str, Any], components: HealthComponents
) -> None:
    metrics = state.metrics
    values = response["metrics"]
    runtime = state.mqtt_runtime
    metrics.active_device_connections.set(values["active_device_connections"])
    metrics.active_controller_connections.set(values["active_controller_connections"])
    metrics.active_streams.set(values["active_streams"])
    metrics.cpu_usage_percent.set(float(values["cpu_usage_percent"]))
    metrics.memory_usage_percent.set(float(values["memory_usage_percent"]))
    metrics.memory_used_bytes.set(float(state.resource_monitor.used_memory_mb() * 1024 * 1024))
    metrics.mqtt_connected.set(1 if runtime.is_connected else 0)
    metrics.mqtt_reconnect_count.set(runtime.reconnect_count)
    metrics.mqtt_dropped_count.set(runtime.dropped_total)
    metrics.mqtt_queue_pending.set(runtime.queue_pending)
    metrics.health_status.set(_STATUS_LEVELS.get(response["status"], 0))
    for name, component in components.items():
        level = float(_STATUS_LEVELS.get(component.status, 0))
        metrics.component_health.labels(name).set(level)


async def _health(request: web.Request) -> web.Response:
    return web.json_response(build_health_response(request.app[_STATE_KEY]))


async def _live(_request: web.Request) -> web.Response:
    return web.Response(status=200)


async def _ready(request: web.Request) -> web.Response:
    response = build_health_response(request.app[_STATE_KEY])
    status = 503 if response["status"] == UNHEALTHY else 200
    return web.json_response(response, status=status)


async def _startup(request: web.Request) -> web.Response:
    state = request.app[_STATE_KEY]
    status = 200 if state.startup_complete else 503
    return web.json_response(build_health_response(state), status=status)


async def _metrics(request: web.Request) -> web.Response:
    state = request.app[_STATE_KEY]
    build_health_response(state)
    try:
        encoded = state.metrics.encode()
    except Exception as err:  # report encoding failures to the scraper
        return web.json_response({"error": str(err)}, status=500)
    return web.Response(
        body=encoded.encode("utf-8"),
        status=200,
        headers={"Content-Type": _METRICS_CONTENT_TYPE},
    )


async def _security_metrics(request: web.Request) -> web.Response:
    state = request.app[_STATE_KEY]
    return web.json_response(state.security_metrics.snapshot().to_dict())


def create_app(config: HealthConfig, state: HealthState) -> web.Application:
    """The web application serving health and metrics endpoints."""
    app = web.Application()
    app[_STATE_KEY] = state
    app.router.add_get(config.path, _health)
    app.router.add_get("/health/live", _live)
    app.router.add_get("/health/ready", _ready)
    app.router.add_get("/health/startup", _startup)
    app.router.add_get("/metrics", _metrics)
    app.router.add_get("/metrics/security", _security_metrics)
    return app


def _parse_socket_address(address: str) -> tuple[str, int]:
    error = ValueError(f"invalid socket address {address!r}")
    host, colon, port_text = address.rpartition(":")
    if not colon:
        raise error
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
        try:
            if ipaddress.ip_address(host).version != 6:
                raise error
        except ValueError:
            raise error from None
    else:
        try:
            if ipaddress.ip_address(host).version != 4:
                raise error
        except ValueError:
            raise error from None
    if not (port_text.isascii() and port_text.isdigit()) or int(port_text) > 65535:
        raise error
    return host, int(port_text)


async def serve_health(config: HealthConfig, state: HealthState) -> None:
    """Serve the health endpoints until cancelled; return at once when disabled.

    Raises ValueError for an address that is not ``ip:port`` and OSError when
    the address cannot be bound.
    """
    if not config.enabled:
        logger.info("health server disabled")
        return
    host, port = _parse_socket_address(config.address)
    runner = web.AppRunner(create_app(config, state))
    await runner.setup()
    try:
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info(
            "health server listening (health_address=%s, health_path=%s)",
            config.address,
            config.path,
        )
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()