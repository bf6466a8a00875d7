import threading

from grpc_relay.relay_metrics import RelayMetrics
from grpc_relay.security_metrics import SecurityMetrics


def test_empty_snapshot_has_zero_ratios():
    snap = SecurityMetrics().snapshot()
    assert snap.auth_success_total == 0
    assert snap.auth_failure_ratio == 0.0
    assert snap.authorization_denied_ratio == 0.0
    assert snap.rate_limit_ratio == 0.0


def test_counters_track_each_event_kind():
    metrics = SecurityMetrics()
    metrics.record_auth_success()
    metrics.record_auth_success()
    metrics.record_auth_failure()
    metrics.record_authorization_denied()
    metrics.record_rate_limit()
    metrics.record_revoked_token()
    snap = metrics.snapshot()
    assert snap.auth_success_total == 2
    assert snap.auth_failure_total == 1
    assert snap.authorization_denied_total == 1
    assert snap.rate_limit_total == 1
    assert snap.revoked_tokens_total == 1


def test_failure_ratio_of_equal_success_and_failure():
    metrics = SecurityMetrics()
    metrics.record_auth_success()
    metrics.record_auth_failure()
    assert metrics.snapshot().auth_failure_ratio == 0.5


def test_ratios_without_auth_events_stay_zero():
    metrics = SecurityMetrics()
    metrics.record_rate_limit()
    metrics.record_authorization_denied()
    snap = metrics.snapshot()
    assert snap.rate_limit_total == 1
    assert snap.rate_limit_ratio == 0.0
    assert snap.authorization_denied_ratio == 0.0


def test_all_failures_give_ratio_one():
    metrics = SecurityMetrics()
    for _ in range(3):
        metrics.record_auth_failure()
    assert metrics.snapshot().auth_failure_ratio == 1.0


def test_snapshot_to_dict_round_trip():
    metrics = SecurityMetrics()
    metrics.record_auth_success()
    snap = metrics.snapshot()
    data = snap.to_dict()
    assert data["auth_success_total"] == snap.auth_success_total
    assert type(snap)(**data) == snap


def test_attached_relay_metrics_are_incremented():
    relay = RelayMetrics()
    metrics = SecurityMetrics()
    metrics.attach_relay_metrics(relay)
    metrics.record_auth_success()
    metrics.record_auth_failure()
    metrics.record_authorization_denied()
    metrics.record_rate_limit()
    metrics.record_revoked_token()
    assert relay.auth_success_total.value == 1
    assert relay.auth_failure_total.value == 1
    assert relay.authorization_denied_total.value == 1
    assert relay.rate_limit_hits_total.value == 1
    assert relay.revoked_tokens_total.value == 1
    assert "relay_auth_success_total 1" in relay.encode()


def test_events_before_attach_are_not_mirrored():
    relay = RelayMetrics()
    metrics = SecurityMetrics()
    metrics.record_auth_success()
    metrics.attach_relay_metrics(relay)
    metrics.record_auth_success()
    assert relay.auth_success_total.value == 1
    assert metrics.snapshot().auth_success_total == 2


def test_second_attach_is_ignored():
    first = RelayMetrics()
    second = RelayMetrics()
    metrics = SecurityMetrics()
    metrics.attach_relay_metrics(first)
    metrics.attach_relay_metrics(second)
    metrics.record_rate_limit()
    assert first.rate_limit_hits_total.value == 1
    assert second.rate_limit_hits_total.value == 0


def test_concurrent_recording_counts_every_event():
    metrics = SecurityMetrics()

    def work():
        for _ in range(100):
            metrics.record_auth_success()

    threads = [threading.Thread(target=work) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert metrics.snapshot().auth_success_total == 8 * 100