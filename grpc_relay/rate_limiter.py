"""Request, connection and bandwidth rate limiting."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass

_U64_MAX = 2**64 - 1
_NANOS_PER_SECOND = 1_000_000_000
_CLEANUP_EVERY = 256
_BUCKET_TTL_SECONDS = 300.0


@dataclass
class RateLimitConfig:
    """Limits applied to requests, connections, bandwidth and system resources."""

    device_requests_per_second: int = 1000
    controller_requests_per_minute: int = 60_000
    global_requests_per_second: int = 100_000
    device_connection_per_minute: int = 10
    global_connections_per_second: int = 100
    device_bandwidth_bytes_per_sec: int = 10 * 1024 * 1024
    controller_bandwidth_bytes_per_sec: int = 100 * 1024 * 1024
    global_bandwidth_bytes_per_sec: int = 100 * 1024 * 1024
    cpu_threshold_percent: float = 80.0
    memory_threshold_mb: int = 12 * 1024


@dataclass
class _Bucket:
    tokens: float
    last: float


class RateLimiter:
    """Token-bucket limiter applied globally, per device and per controller."""

    def __init__(self, config: RateLimitConfig) -> None:
        self.device_rate = float(config.device_requests_per_second)
        self.controller_rate = config.controller_requests_per_minute / 60.0
        self.global_rate = float(config.global_requests_per_second)
        self.bucket_ttl = _BUCKET_TTL_SECONDS
        self._buckets: dict[str, _Bucket] = {}
        self._calls = 0
        self._lock = threading.Lock()

    def allow(self, device_id: str, controller_id: str) -> bool:
        """Consume one token from each bucket in turn; False at the first empty one."""
        with self._lock:
            self._maybe_cleanup()
            if not self._check_key("global", self.global_rate):
                return False
            if not self._check_key(f"device:{device_id}", self.device_rate):
                return False
            return self._check_key(f"controller:{controller_id}", self.controller_rate)

    def _check_key(self, key: str, rate: float) -> bool:
        if rate <= 0.0:
            return False
        now = time.monotonic()
        bucket = self._buckets.get(key)
        if bucket is None:
            self._buckets[key] = _Bucket(tokens=max(rate - 1.0, 0.0), last=now)
            return True
        elapsed = max(0.0, now - bucket.last)
        if elapsed > 0.0:
            bucket.tokens = min(rate, bucket.tokens + elapsed * rate)
            bucket.last = now
        if bucket.tokens >= 1.0:
            bucket.tokens -= 1.0
            return True
        return False

    def _maybe_cleanup(self) -> None:
        self._calls += 1
        if self._calls % _CLEANUP_EVERY:
            return
        now = time.monotonic()
        stale = [key for key, b in self._buckets.items() if now - b.last >= self.bucket_ttl]
        for key in stale:
            del self._buckets[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


class ConnectionRateLimiter:
    """Sliding-window limiter for connection attempts."""

    def __init__(self, config: RateLimitConfig) -> None:
        self.device_limit = config.device_connection_per_minute
        self.device_window = 60.0
        self.global_limit = config.global_connections_per_second
        self.global_window = 1.0
        self._device_windows: dict[str, deque[float]] = {}
        self._global_window: deque[float] = deque()
        self._lock = threading.Lock()

    def allow_device(self, device_id: str) -> bool:
        """Record a connection attempt by a device; True if within the limit."""
        with self._lock:
            window = self._device_windows.setdefault(device_id, deque())
            return self._prune_and_check(window, self.device_limit, self.device_window)

    def allow_global(self) -> bool:
        """Record a connection attempt across all devices; True if within the limit."""
        with self._lock:
            return self._prune_and_check(
                self._global_window, self.global_limit, self.global_window
            )

    @staticmethod
    def _prune_and_check(window: deque[float], limit: int, duration: float) -> bool:
        now = time.monotonic()
        while window and now - window[0] >= duration:
            window.popleft()
        if len(window) >= limit:
            return False
        window.append(now)
        return True


class BandwidthTracker:
    """Tracks bytes transferred in rotating one-second windows."""

    def __init__(self, config: RateLimitConfig) -> None:
        self.device_limit = config.device_bandwidth_bytes_per_sec
        self.controller_limit = config.controller_bandwidth_bytes_per_sec
        self.global_limit = config.global_bandwidth_bytes_per_sec
        # key -> (bytes in window, window start in nanoseconds)
        self.windows: dict[str, tuple[int, int]] = {}
        self._lock = threading.Lock()

    def record_and_check(self, device_id: str, controller_id: str, num_bytes: int) -> bool:
        """Record bytes against every scope; False if any limit is exceeded."""
        global_ok = self.record_key("global", num_bytes, self.global_limit)
        device_ok = self.record_key(f"device:{device_id}", num_bytes, self.device_limit)
        controller_ok = self.record_key(
            f"controller:{controller_id}", num_bytes, self.controller_limit
        )
        return global_ok and device_ok and controller_ok

    def record_key(self, key: str, num_bytes: int, limit: int) -> bool:
        """Add bytes to one window, rotating it first if a second has passed."""
        now_ns = time.time_ns()
        with self._lock:
            total, start = self.windows.setdefault(key, (0, now_ns))
            if now_ns - start >= _NANOS_PER_SECOND:
                total, start = 0, now_ns
            new_total = total + num_bytes
            if new_total > _U64_MAX:
                self.windows[key] = (total, start)
                return False
            self.windows[key] = (new_total, start)
            return new_total <= limit