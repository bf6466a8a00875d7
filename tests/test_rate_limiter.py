import dataclasses
import time
from concurrent.futures import ThreadPoolExecutor

from grpc_relay.rate_limiter import (
    BandwidthTracker,
    ConnectionRateLimiter,
    RateLimitConfig,
    RateLimiter,
)


def config(**overrides):
    base = RateLimitConfig(
        device_requests_per_second=100,
        controller_requests_per_minute=60_000,
        global_requests_per_second=100_000,
        device_connection_per_minute=10,
        global_connections_per_second=100,
        device_bandwidth_bytes_per_sec=10 * 1024 * 1024,
        controller_bandwidth_bytes_per_sec=100 * 1024 * 1024,
        global_bandwidth_bytes_per_sec=100 * 1024 * 1024,
        cpu_threshold_percent=80.0,
        memory_threshold_mb=12 * 1024,
    )
    return dataclasses.replace(base, **overrides)


def test_allows_first_request():
    assert RateLimiter(config()).allow("dev-1", "ctrl-1") is True


def test_denies_after_exhaustion():
    rl = RateLimiter(config(device_requests_per_second=2))
    assert rl.allow("dev-1", "ctrl-1")
    assert rl.allow("dev-1", "ctrl-1")
    assert not rl.allow("dev-1", "ctrl-1")


def test_different_devices_independent():
    rl = RateLimiter(config(device_requests_per_second=1))
    assert rl.allow("dev-1", "ctrl-1")
    assert not rl.allow("dev-1", "ctrl-1")
    assert rl.allow("dev-2", "ctrl-1")


def test_global_limit_applies():
    rl = RateLimiter(config(device_requests_per_second=1000, global_requests_per_second=1))
    assert rl.allow("dev-1", "ctrl-1")
    assert not rl.allow("dev-2", "ctrl-2")


def test_zero_rate_denies_requests():
    rl = RateLimiter(config(device_requests_per_second=0))
    assert not rl.allow("dev-1", "ctrl-1")


def test_controller_rate_is_per_minute_converted_to_per_second():
    rl = RateLimiter(
        config(device_requests_per_second=1000, controller_requests_per_minute=120)
    )
    assert rl.allow("dev-1", "ctrl-1")
    assert rl.allow("dev-2", "ctrl-1")
    assert not rl.allow("dev-3", "ctrl-1")


def test_controller_rate_limit_blocks_when_exceeded():
    rl = RateLimiter(config(device_requests_per_second=1000, controller_requests_per_minute=1))
    assert rl.allow("dev-1", "ctrl-1")
    assert not rl.allow("dev-2", "ctrl-1")


def test_global_rate_limit_blocks_when_exceeded():
    rl = RateLimiter(config(device_requests_per_second=1000, global_requests_per_second=1))
    assert rl.allow("dev-1", "ctrl-1")
    assert not rl.allow("dev-2", "ctrl-2")
    assert not rl.allow("dev-3", "ctrl-3")


def test_concurrent_requests_share_controller_bucket():
    rl = RateLimiter(config(device_requests_per_second=1000, controller_requests_per_minute=1))
    with ThreadPoolExecutor(max_workers=20) as pool:
        outcomes = list(pool.map(lambda _: rl.allow("dev-1", "ctrl-1"), range(20)))
    assert len(outcomes) == 20
    assert outcomes.count(True) == 1
    assert outcomes.count(False) == 19


def test_len_counts_buckets():
    rl = RateLimiter(config())
    assert len(rl) == 0
    rl.allow("dev-1", "ctrl-1")
    assert len(rl) == 3


def test_default_config_limiter_allows_first_request():
    rl = RateLimiter(RateLimitConfig())
    assert rl.allow("dev-1", "ctrl-1") is True


def test_connection_limiter_allows_up_to_limit():
    rl = ConnectionRateLimiter(config())
    assert all(rl.allow_device("dev-1") for _ in range(10))
    assert not rl.allow_device("dev-1")


def test_connection_limiter_independent_per_device():
    rl = ConnectionRateLimiter(config())
    assert all(rl.allow_device("dev-1") for _ in range(10))
    assert not rl.allow_device("dev-1")
    assert rl.allow_device("dev-2")


def test_connection_limiter_global():
    rl = ConnectionRateLimiter(config(global_connections_per_second=3))
    assert rl.allow_global()
    assert rl.allow_global()
    assert rl.allow_global()
    assert not rl.allow_global()


def test_connection_limiter_from_default_config():
    rl = ConnectionRateLimiter(
        dataclasses.replace(
            RateLimitConfig(), device_connection_per_minute=10, global_connections_per_second=100
        )
    )
    assert [rl.allow_device("dev-1") for _ in range(11)] == [True] * 10 + [False]


def test_bandwidth_tracker_allows_within_limit():
    bt = BandwidthTracker(config())
    assert bt.record_and_check("dev-1", "ctrl-1", 1024)


def test_bandwidth_tracker_denies_when_exceeding_device_limit():
    bt = BandwidthTracker(
        config(
            device_bandwidth_bytes_per_sec=100,
            controller_bandwidth_bytes_per_sec=100_000_000,
            global_bandwidth_bytes_per_sec=100_000_000,
        )
    )
    assert bt.record_and_check("dev-1", "ctrl-1", 50)
    assert not bt.record_and_check("dev-1", "ctrl-1", 60)


def test_bandwidth_tracker_denies_when_exceeding_controller_limit():
    bt = BandwidthTracker(
        config(
            device_bandwidth_bytes_per_sec=100_000_000,
            controller_bandwidth_bytes_per_sec=100,
            global_bandwidth_bytes_per_sec=100_000_000,
        )
    )
    assert bt.record_and_check("dev-1", "ctrl-1", 60)
    assert not bt.record_and_check("dev-1", "ctrl-1", 50)


def test_bandwidth_tracker_denies_when_exceeding_global_limit():
    bt = BandwidthTracker(
        config(
            device_bandwidth_bytes_per_sec=100_000_000,
            controller_bandwidth_bytes_per_sec=100_000_000,
            global_bandwidth_bytes_per_sec=100,
        )
    )
    assert bt.record_and_check("dev-1", "ctrl-1", 50)
    assert not bt.record_and_check("dev-2", "ctrl-2", 60)


def test_bandwidth_tracker_rotates_window_before_counting_new_bytes():
    bt = BandwidthTracker(
        config(
            device_bandwidth_bytes_per_sec=100,
            controller_bandwidth_bytes_per_sec=100_000_000,
            global_bandwidth_bytes_per_sec=100_000_000,
        )
    )
    bt.windows["device:dev-1"] = (90, time.time_ns() - 2_000_000_000)
    assert bt.record_key("device:dev-1", 20, 100)
    assert bt.windows["device:dev-1"][0] == 20


def test_bandwidth_tracker_rejects_overflow():
    bt = BandwidthTracker(config())
    bt.windows["k"] = (2**64 - 1, time.time_ns())
    assert not bt.record_key("k", 1, 2**64 - 1)
    assert bt.windows["k"][0] == 2**64 - 1