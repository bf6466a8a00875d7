"""Prometheus-style metrics for the relay, exported in the text exposition format."""

from __future__ import annotations

import math
import threading
from typing import Callable, Iterator

DEFAULT_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)

Sample = tuple[str, tuple[tuple[str, str], ...], float]


def _format_value(value: float) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e17:
        return str(int(value))
    return repr(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _format_labels(labels: tuple[tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    inner = ",".join(f'{name}="{_escape_label(value)}"' for name, value in labels)
    return "{" + inner + "}"


class _Metric:
    kind = "untyped"

    def __init__(
        self, name: str, documentation: str, labels: tuple[tuple[str, str], ...] = ()
    ) -> None:
        self.name = name
        self.documentation = documentation
        self._labels = labels
        self._lock = threading.Lock()

    def samples(self) -> Iterator[Sample]:
        raise NotImplementedError


class Counter(_Metric):
    """A monotonically increasing count."""

    kind = "counter"

    def __init__(
        self, name: str, documentation: str, labels: tuple[tuple[str, str], ...] = ()
    ) -> None:
        super().__init__(name, documentation, labels)
        self._value = 0

    def inc(self, amount: int | float = 1) -> None:
        if amount < 0:
            raise ValueError("counter can only increase")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int | float:
        with self._lock:
            return self._value

    def samples(self) -> Iterator[Sample]:
        yield self.name, self._labels, self.value


class Gauge(_Metric):
    """A value that can go up and down."""

    kind = "gauge"

    def __init__(
        self, name: str, documentation: str, labels: tuple[tuple[str, str], ...] = ()
    ) -> None:
        super().__init__(name, documentation, labels)
        self._value: int | float = 0

    def set(self, value: int | float) -> None:
        with self._lock:
            self._value = value

    def inc(self, amount: int | float = 1) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: int | float = 1) -> None:
        with self._lock:
            self._value -= amount

    @property
    def value(self) -> int | float:
        with self._lock:
            return self._value

    def samples(self) -> Iterator[Sample]:
        yield self.name, self._labels, self.value


class Histogram(_Metric):
    """Observations counted into cumulative buckets."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        documentation: str,
        labels: tuple[tuple[str, str], ...] = (),
        buckets: tuple[float, ...] = DEFAULT_BUCKETS,
    ) -> None:
        super().__init__(name, documentation, labels)
        self.buckets = tuple(sorted(buckets))
        self._counts = [0] * len(self.buckets)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        with self._lock:
            for index, bound in enumerate(self.buckets):
                if value <= bound:
                    self._counts[index] += 1
                    break
            self._sum += value
            self._count += 1

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    def samples(self) -> Iterator[Sample]:
        with self._lock:
            counts, total, count = list(self._counts), self._sum, self._count
        cumulative = 0
        for bound, bucket_count in zip(self.buckets, counts):
            cumulative += bucket_count
            yield f"{self.name}_bucket", self._labels + (("le", _format_value(bound)),), cumulative
        yield f"{self.name}_bucket", self._labels + (("le", "+Inf"),), count
        yield f"{self.name}_sum", self._labels, total
        yield f"{self.name}_count", self._labels, count


class MetricVec:
    """A family of metrics of one kind, told apart by label values."""

    def __init__(
        self,
        factory: Callable[..., _Metric],
        name: str,
        documentation: str,
        label_names: list[str] | tuple[str, ...],
    ) -> None:
        self._factory = factory
        self.name = name
        self.documentation = documentation
        self.label_names = tuple(label_names)
        self.kind = factory.kind  # type: ignore[attr-defined]
        self._children: dict[tuple[str, ...], _Metric] = {}
        self._lock = threading.Lock()

    def labels(self, *args: str) -> _Metric:
        """Return the child metric for these label values, creating it if needed."""
        if len(args) != len(self.label_names):
            raise ValueError(
                f"expected {len(self.label_names)} label values, got {len(args)}"
            )
        values = tuple(str(a) for a in args)
        with self._lock:
            child = self._children.get(values)
            if child is None:
                child = self._factory(
                    self.name, self.documentation, tuple(zip(self.label_names, values))
                )
                self._children[values] = child
            return child

    def samples(self) -> Iterator[Sample]:
        with self._lock:
            children = sorted(self._children.items())
        for _, child in children:
            yield from child.samples()


class Registry:
    """A set of uniquely named metrics that can be encoded together."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric | MetricVec] = {}
        self._lock = threading.Lock()

    def register(self, metric: _Metric | MetricVec) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"metric {metric.name!r} is already registered")
            self._metrics[metric.name] = metric

    def encode(self) -> str:
        """Render all metrics, sorted by name, in the text exposition format."""
        with self._lock:
            metrics = sorted(self._metrics.items())
        lines: list[str] = []
        for name, metric in metrics:
            samples = list(metric.samples())
            if not samples:
                continue
            lines.append(f"# HELP {name} {_escape_help(metric.documentation)}")
            lines.append(f"# TYPE {name} {metric.kind}")
            for sample_name, labels, value in samples:
                lines.append(f"{sample_name}{_format_labels(labels)} {_format_value(value)}")
        return "".join(line + "\n" for line in lines)


class RelayMetrics:
    """All metrics the relay exports, registered in one registry."""

    def __init__(self) -> None:
        self.registry = Registry()
        self.auth_success_total = Counter(
            "relay_auth_success_total", "Total successful authentication events"
        )
        self.auth_failure_total = Counter(
            "relay_auth_failures_total", "Total failed authentication events"
        )
        self.authorization_denied_total = Counter(
            "relay_authorization_denied_total", "Total authorization denied events"
        )
        self.rate_limit_hits_total = Counter(
            "relay_rate_limit_hits_total", "Total rate limit events"
        )
        self.revoked_tokens_total = Counter(
            "relay_revoked_tokens_total", "Total revoked tokens"
        )
        self.active_device_connections = Gauge(
            "relay_active_device_connections", "Current active device connections"
        )
        self.active_controller_connections = Gauge(
            "relay_active_controller_connections", "Current active controller connections"
        )
        self.active_streams = Gauge(
            "relay_active_streams", "Current active controller-device streams"
        )
        self.cpu_usage_percent = Gauge("relay_cpu_usage_percent", "Current CPU usage percent")
        self.memory_usage_percent = Gauge(
            "relay_memory_usage_percent", "Current memory usage percent"
        )
        self.memory_used_bytes = Gauge("relay_memory_used_bytes", "Current memory usage in bytes")
        self.mqtt_connected = Gauge("relay_mqtt_connected", "Current MQTT connected state")
        self.mqtt_reconnect_count = Gauge(
            "relay_mqtt_reconnect_count", "Observed MQTT reconnect count"
        )
        self.mqtt_dropped_count = Gauge(
            "relay_mqtt_dropped_count", "Observed MQTT dropped publish count"
        )
        self.mqtt_queue_pending = Gauge("relay_mqtt_queue_pending", "Current MQTT queue depth")
        self.health_status = Gauge(
            "relay_health_status",
            "Overall health status (0=unhealthy, 1=degraded, 2=healthy)",
        )
        self.component_health = MetricVec(
            Gauge,
            "relay_component_health",
            "Health status by component (0=unhealthy, 1=degraded, 2=healthy)",
            ["component"],
        )
        self.request_latency_seconds = MetricVec(
            Histogram,
            "relay_request_latency_seconds",
            "Relay request latency by method and status",
            ["method_name", "status"],
        )
        self.requests_total = MetricVec(
            Counter,
            "relay_requests_total",
            "Total relay requests by method and status",
            ["method_name", "status"],
        )
        self.bytes_transferred_total = MetricVec(
            Counter,
            "relay_bytes_transferred_total",
            "Total bytes transferred by direction",
            ["direction"],
        )
        for metric in (
            self.auth_success_total,
            self.auth_failure_total,
            self.authorization_denied_total,
            self.rate_limit_hits_total,
            self.revoked_tokens_total,
            self.active_device_connections,
            self.active_controller_connections,
            self.active_streams,
            self.cpu_usage_percent,
            self.memory_usage_percent,
            self.memory_used_bytes,
            self.mqtt_connected,
            self.mqtt_reconnect_count,
            self.mqtt_dropped_count,
            self.mqtt_queue_pending,
            self.health_status,
            self.component_health,
            self.request_latency_seconds,
            self.requests_total,
            self.bytes_transferred_total,
        ):
            self.registry.register(metric)

    def encode(self) -> str:
        """Render every relay metric in the text exposition format."""
        return self.registry.encode()