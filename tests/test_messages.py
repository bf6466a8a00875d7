import pytest

from grpc_relay.messages import (
    DataRequest,
    DeviceResponse,
    ErrorCode,
    HeartbeatResponse,
    RegisterResponse,
    device_response_from_device_data,
    make_error_response,
    relay_message_data_request,
    relay_message_heartbeat_response,
    relay_message_register_response,
)


def test_device_response_from_device_data_keeps_fields():
    resp = device_response_from_device_data("dev-1", 7, b"\x01\x02", int(ErrorCode.OK))
    assert resp == DeviceResponse("dev-1", 7, b"\x01\x02", int(ErrorCode.OK))


def test_make_error_response_has_empty_payload():
    resp = make_error_response("dev-1", 42, ErrorCode.DEVICE_OFFLINE)
    assert resp.device_id == "dev-1"
    assert resp.sequence_number == 42
    assert resp.encrypted_payload == b""
    assert resp.error == ErrorCode.DEVICE_OFFLINE


@pytest.mark.parametrize(
    "code",
    [ErrorCode.UNAUTHORIZED, ErrorCode.DEVICE_NOT_FOUND, ErrorCode.INTERNAL_ERROR],
)
def test_error_code_round_trips_through_int(code):
    resp = make_error_response("dev-2", 1, code)
    assert ErrorCode(resp.error) is code


def test_data_request_message():
    msg = relay_message_data_request("conn-1", 5, b"abc")
    assert isinstance(msg.payload, DataRequest)
    assert msg.payload.connection_id == "conn-1"
    assert msg.payload.sequence_number == 5
    assert msg.payload.encrypted_payload == b"abc"


def test_register_response_message():
    msg = relay_message_register_response("conn-9", True)
    assert msg.payload == RegisterResponse("conn-9", True, 0)


def test_heartbeat_response_message():
    msg = relay_message_heartbeat_response()
    assert msg.payload == HeartbeatResponse(timestamp=0)


def test_messages_are_immutable():
    resp = make_error_response("dev-1", 1, ErrorCode.INTERNAL_ERROR)
    with pytest.raises(AttributeError):
        resp.device_id = "other"  # type: ignore[misc]
    assert resp.device_id == "dev-1"
    assert resp == make_error_response("dev-1", 1, ErrorCode.INTERNAL_ERROR)