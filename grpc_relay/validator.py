"""Validation of controller requests before they are routed."""

from __future__ import annotations

from grpc_relay.messages import ErrorCode

MAX_PAYLOAD_BYTES = 10 * 1024 * 1024
MAX_ID_LENGTH = 64


class ValidationError(ValueError):
    """A request field failed validation; carries the error code to report."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ValidationError):
            return NotImplemented
        return (self.code, self.message) == (other.code, other.message)

    def __hash__(self) -> int:
        return hash((self.code, self.message))


def validate_controller_message(
    controller_id: str,
    target_device_id: str,
    method_name: str,
    encrypted_payload: bytes,
    sequence_number: int,
) -> None:
    """Validate every field of a controller message, raising on the first failure."""
    validate_controller_id(controller_id)
    validate_device_id(target_device_id)
    validate_method_name(method_name)
    validate_payload_size(len(encrypted_payload))
    validate_sequence_number(sequence_number)


def _check_id(identifier: str, field_name: str, code: ErrorCode) -> None:
    if not identifier.strip():
        raise ValidationError(code, f"{field_name} must not be empty")
    if len(identifier.encode("utf-8")) > MAX_ID_LENGTH:
        raise ValidationError(code, f"{field_name} too long (max {MAX_ID_LENGTH} chars)")


def validate_controller_id(identifier: str) -> None:
    _check_id(identifier, "controller_id", ErrorCode.UNAUTHORIZED)


def validate_device_id(identifier: str) -> None:
    _check_id(identifier, "target_device_id", ErrorCode.DEVICE_NOT_FOUND)


def _is_method_char(char: str) -> bool:
    return (char.isascii() and char.isalnum()) or char in "_./"


def validate_method_name(name: str) -> None:
    """Accept ASCII letters, digits, underscores, dots and slashes."""
    if not name.strip():
        raise ValidationError(ErrorCode.INTERNAL_ERROR, "method_name must not be empty")
    if not all(_is_method_char(c) for c in name):
        raise ValidationError(ErrorCode.INTERNAL_ERROR, "method_name contains invalid characters")


def validate_payload_size(size: int) -> None:
    if size > MAX_PAYLOAD_BYTES:
        raise ValidationError(
            ErrorCode.INTERNAL_ERROR,
            f"payload exceeds maximum size of {MAX_PAYLOAD_BYTES} bytes",
        )


def validate_sequence_number(seq: int) -> None:
    if seq <= 0:
        raise ValidationError(ErrorCode.INTERNAL_ERROR, "sequence_number must be positive")