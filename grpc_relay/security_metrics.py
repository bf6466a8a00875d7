"""Counters of security events, with ratios against authentication attempts."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass

from grpc_relay.relay_metrics import RelayMetrics


@dataclass(frozen=True)
class SecurityMetricsSnapshot:
    """Point-in-time copy of the security counters."""

    auth_success_total: int
    auth_failure_total: int
    authorization_denied_total: int
    rate_limit_total: int
    revoked_tokens_total: int
    auth_failure_ratio: float
    authorization_denied_ratio: float
    rate_limit_ratio: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def _ratio(value: int, total: int) -> float:
    return 0.0 if total == 0 else value / total


class SecurityMetrics:
    """Thread-safe security event counters, optionally mirrored to RelayMetrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._auth_success = 0
        self._auth_failure = 0
        self._authorization_denied = 0
        self._rate_limit = 0
        self._revoked_tokens = 0
        self._relay_metrics: RelayMetrics | None = None

    def attach_relay_metrics(self, relay_metrics: RelayMetrics) -> None:
        """Mirror future events into relay_metrics; only the first call has effect."""
        with self._lock:
            if self._relay_metrics is None:
                self._relay_metrics = relay_metrics

    def record_auth_success(self) -> None:
        with self._lock:
            self._auth_success += 1
            metrics = self._relay_metrics
        if metrics is not None:
            metrics.auth_success_total.inc()

    def record_auth_failure(self) -> None:
        with self._lock:
            self._auth_failure += 1
            metrics = self._relay_metrics
        if metrics is not None:
            metrics.auth_failure_total.inc()

    def record_authorization_denied(self) -> None:
        with self._lock:
            self._authorization_denied += 1
            metrics = self._relay_metrics
        if metrics is not None:
            metrics.authorization_denied_total.inc()

    def record_rate_limit(self) -> None:
        with self._lock:
            self._rate_limit += 1
            metrics = self._relay_metrics
        if metrics is not None:
            metrics.rate_limit_hits_total.inc()

    def record_revoked_token(self) -> None:
        with self._lock:
            self._revoked_tokens += 1
            metrics = self._relay_metrics
        if metrics is not None:
            metrics.revoked_tokens_total.inc()

    def snapshot(self) -> SecurityMetricsSnapshot:
        """Current counters plus ratios relative to all authentication attempts."""
        with self._lock:
            success = self._auth_success
            failure = self._auth_failure
            denied = self._authorization_denied
            rate_limit = self._rate_limit
            revoked = self._revoked_tokens
        auth_total = success + failure
        return SecurityMetricsSnapshot(
            auth_success_total=success,
            auth_failure_total=failure,
            authorization_denied_total=denied,
            rate_limit_total=rate_limit,
            revoked_tokens_total=revoked,
            auth_failure_ratio=_ratio(failure, auth_total),
            authorization_denied_ratio=_ratio(denied, auth_total),
            rate_limit_ratio=_ratio(rate_limit, auth_total),
        )