import threading

from grpc_relay.messages import ErrorCode
from grpc_relay.session import SessionRegistry
from grpc_relay.state import DeviceSession, RelayState


def make_session(device_id, conn_id):
    return DeviceSession(device_id=device_id, connection_id=conn_id, metadata={})


def test_is_device_online_after_registration():
    state = RelayState()
    registry = SessionRegistry(state)
    state.sessions_by_device_id["dev-1"] = make_session("dev-1", "conn-1")
    assert registry.is_device_online("dev-1")
    assert registry.online_device_count() == 1


def test_offline_device_not_found():
    registry = SessionRegistry(RelayState())
    assert not registry.is_device_online("dev-nonexistent")
    assert registry.get_device_session("dev-nonexistent") is None


def test_list_online_devices_returns_all():
    state = RelayState()
    registry = SessionRegistry(state)
    state.sessions_by_device_id["dev-1"] = make_session("dev-1", "conn-1")
    state.sessions_by_device_id["dev-2"] = make_session("dev-2", "conn-2")
    devices = registry.list_online_devices("relay-1:50051")
    assert len(devices) == 2
    assert devices[0].relay_address == "relay-1:50051"
    assert {d.device_id for d in devices} == {"dev-1", "dev-2"}


def test_device_offline_response_builds():
    resp = SessionRegistry.device_offline_response("dev-1", 42)
    assert resp.device_id == "dev-1"
    assert resp.sequence_number == 42
    assert resp.error == int(ErrorCode.DEVICE_OFFLINE)
    assert resp.encrypted_payload == b""


def test_session_removed_after_remove_device_session():
    state = RelayState()
    state.sessions_by_device_id["dev-1"] = make_session("dev-1", "conn-1")
    state.connection_to_device_id["conn-1"] = "dev-1"
    removed = state.remove_device_session("dev-1")
    assert removed.connection_id == "conn-1"
    assert "dev-1" not in state.sessions_by_device_id
    assert "conn-1" not in state.connection_to_device_id


def test_duplicate_registration_replaces_old_session():
    state = RelayState()
    state.sessions_by_device_id["dev-1"] = make_session("dev-1", "conn-1")
    state.connection_to_device_id["conn-1"] = "dev-1"

    previous = state.sessions_by_device_id.get("dev-1")
    state.sessions_by_device_id["dev-1"] = make_session("dev-1", "conn-2")
    if previous is not None:
        state.connection_to_device_id.pop(previous.connection_id, None)
    state.connection_to_device_id["conn-2"] = "dev-1"

    registry = SessionRegistry(state)
    assert registry.is_device_online("dev-1")
    session = registry.get_device_session("dev-1")
    assert session.connection_id == "conn-2"
    assert "conn-1" not in state.connection_to_device_id


def test_get_device_session_returns_copy():
    state = RelayState()
    state.sessions_by_device_id["dev-1"] = DeviceSession("dev-1", "conn-1", {"region": "test"})
    registry = SessionRegistry(state)
    copy = registry.get_device_session("dev-1")
    copy.metadata["region"] = "changed"
    assert state.sessions_by_device_id["dev-1"].metadata["region"] == "test"


def test_list_online_devices_filtering():
    state = RelayState()
    registry = SessionRegistry(state)
    state.sessions_by_device_id["dev-1"] = make_session("dev-1", "conn-1")
    state.sessions_by_device_id["dev-2"] = make_session("dev-2", "conn-2")
    assert len(registry.list_online_devices("relay-1")) == 2


def test_concurrent_register_and_heartbeat_no_race():
    state = RelayState()
    errors = []

    def register():
        try:
            for i in range(50):
                state.sessions_by_device_id[f"dev-{i}"] = make_session(f"dev-{i}", f"conn-{i}")
        except Exception as exc:  # pragma: no cover - recorded for the assertion
            errors.append(exc)

    def heartbeat():
        try:
            for i in range(50):
                state.sessions_by_device_id.get(f"dev-{i}")
        except Exception as exc:  # pragma: no cover - recorded for the assertion
            errors.append(exc)

    threads = [threading.Thread(target=register), threading.Thread(target=heartbeat)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert len(state.sessions_by_device_id) == 50


def test_controller_connection_counts():
    state = RelayState()
    assert state.controller_connection_count() == 0
    state.increment_controller_connections()
    state.increment_controller_connections()
    assert state.controller_connection_count() == 2
    state.decrement_controller_connections()
    assert state.controller_connection_count() == 1
    state.decrement_controller_connections()
    state.decrement_controller_connections()
    assert state.controller_connection_count() == 0


def test_connection_to_device_mapping():
    state = RelayState()
    state.connection_to_device_id["conn-1"] = "dev-1"
    assert state.device_id_for_connection("conn-1") == "dev-1"
    assert state.device_id_for_connection("conn-nonexistent") is None


def test_next_connection_id_is_unique():
    state = RelayState()
    id1 = state.next_connection_id()
    id2 = state.next_connection_id()
    assert id1 != id2
    assert id1.startswith("conn-")