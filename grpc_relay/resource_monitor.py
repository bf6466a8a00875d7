"""System CPU and memory monitoring against configured thresholds."""

from __future__ import annotations

import logging

import psutil

from grpc_relay.rate_limiter import RateLimitConfig

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024


def cpu_usage_percent_from_raw(raw: float) -> float:
    """Convert a raw CPU reading, already in percent, to a float percentage."""
    return float(raw)


class ResourceMonitor:
    """Reports system load and whether it is within the configured thresholds."""

    def __init__(self, config: RateLimitConfig) -> None:
        self.cpu_threshold = float(config.cpu_threshold_percent)
        self.memory_threshold_mb = int(config.memory_threshold_mb)
        # Prime the CPU counter so later non-blocking reads are meaningful.
        psutil.cpu_percent(interval=None)

    def is_healthy(self) -> bool:
        """True when CPU usage and used memory are both within their thresholds."""
        cpu_usage = self.cpu_usage_percent()
        if cpu_usage > self.cpu_threshold:
            logger.warning(
                "resource monitor: cpu threshold exceeded (usage=%s, threshold=%s)",
                cpu_usage,
                self.cpu_threshold,
            )
            return False
        used_mb = self.used_memory_mb()
        if used_mb > self.memory_threshold_mb:
            logger.warning(
                "resource monitor: memory threshold exceeded (used_mb=%s, threshold_mb=%s)",
                used_mb,
                self.memory_threshold_mb,
            )
            return False
        return True

    def cpu_usage_percent(self) -> float:
        """CPU usage across all cores, in percent."""
        return cpu_usage_percent_from_raw(psutil.cpu_percent(interval=None))

    def memory_usage_percent(self) -> float:
        """Used memory as a percentage of total memory."""
        memory = psutil.virtual_memory()
        if memory.total == 0:
            return 0.0
        return memory.used / memory.total * 100.0

    def used_memory_mb(self) -> int:
        """Used memory in whole mebibytes."""
        return psutil.virtual_memory().used // _MIB