"""Wire format of the security-1 session messages (protocol buffers)."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterator, Optional, Union

from .utils import InvalidArgumentError

__all__ = ["SEC_VER", "MsgType", "Status", "SessionData"]

SEC_VER = 1

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LEN = 2
_WIRE_FIXED32 = 5

_FIELD_SEC_VER = 2
_FIELD_SEC1 = 11
_FIELD_MSG = 1
_PAYLOAD_BASE = 20


class MsgType(enum.IntEnum):
    """Step of the security-1 session setup."""

    SESSION_COMMAND0 = 0
    SESSION_RESPONSE0 = 1
    SESSION_COMMAND1 = 2
    SESSION_RESPONSE1 = 3


class Status(enum.IntEnum):
    """Status reported by the device in its responses."""

    SUCCESS = 0
    INVALID_SEC_SCHEME = 1
    INVALID_PROTO = 2
    TOO_MANY_SESSIONS = 3
    INVALID_ARGUMENT = 4
    INTERNAL_ERROR = 5
    CRYPTO_ERROR = 6
    INVALID_SESSION = 7


def _encode_varint(value: int) -> bytes:
    if value < 0:
        value &= (1 << 64) - 1
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _key(number: int, wire: int) -> bytes:
    return _encode_varint(number << 3 | wire)


def _varint_field(number: int, value: int) -> bytes:
    if not value:
        return b""
    return _key(number, _WIRE_VARINT) + _encode_varint(int(value))


def _bytes_field(number: int, value: bytes, always: bool = False) -> bytes:
    if not value and not always:
        return b""
    return _key(number, _WIRE_LEN) + _encode_varint(len(value)) + value


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise InvalidArgumentError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 70:
            raise InvalidArgumentError("varint is too long")


def _take(data: bytes, pos: int, length: int) -> tuple[bytes, int]:
    end = pos + length
    if end > len(data):
        raise InvalidArgumentError("truncated field")
    return data[pos:end], end


def _iter_fields(data: bytes) -> Iterator[tuple[int, int, Union[int, bytes]]]:
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire = key >> 3, key & 0x7
        if number == 0:
            raise InvalidArgumentError("field number 0 is not allowed")
        value: Union[int, bytes]
        if wire == _WIRE_VARINT:
            value, pos = _read_varint(data, pos)
        elif wire == _WIRE_FIXED64:
            value, pos = _take(data, pos, 8)
        elif wire == _WIRE_LEN:
            length, pos = _read_varint(data, pos)
            value, pos = _take(data, pos, length)
        elif wire == _WIRE_FIXED32:
            value, pos = _take(data, pos, 4)
        else:
            raise InvalidArgumentError(f"unsupported wire type {wire}")
        yield number, wire, value


def _expect(wire: int, expected: int, number: int) -> None:
    if wire != expected:
        raise InvalidArgumentError(f"field {number} has wire type {wire}")


def _as_msg(value: int) -> Union[MsgType, int]:
    try:
        return MsgType(value)
    except ValueError:
        return value


@dataclass
class SessionData:
    """A session message; ``msg`` is None when it carries no security-1 payload.

    Only the payload fields that belong to ``msg`` are written by encode().
    """

    msg: Optional[int] = None
    sec_ver: int = SEC_VER
    client_pubkey: bytes = b""
    device_pubkey: bytes = b""
    device_random: bytes = b""
    client_verify_data: bytes = b""
    device_verify_data: bytes = b""
    status: int = Status.SUCCESS

    def _payload(self) -> bytes:
        if self.msg == MsgType.SESSION_COMMAND0:
            return _bytes_field(1, bytes(self.client_pubkey))
        if self.msg == MsgType.SESSION_RESPONSE0:
            return (
                _varint_field(1, self.status)
                + _bytes_field(2, bytes(self.device_pubkey))
                + _bytes_field(3, bytes(self.device_random))
            )
        if self.msg == MsgType.SESSION_COMMAND1:
            return _bytes_field(2, bytes(self.client_verify_data))
        return _varint_field(1, self.status) + _bytes_field(
            3, bytes(self.device_verify_data)
        )

    def encode(self) -> bytes:
        out = _varint_field(_FIELD_SEC_VER, self.sec_ver)
        if self.msg is None:
            return out
        sec1 = _varint_field(_FIELD_MSG, self.msg)
        if self.msg in MsgType.__members__.values():
            sec1 += _bytes_field(
                _PAYLOAD_BASE + int(self.msg), self._payload(), always=True
            )
        return out + _bytes_field(_FIELD_SEC1, sec1, always=True)

    @classmethod
    def decode(cls, data: bytes) -> "SessionData":
        """Parse a message; raises InvalidArgumentError when it is malformed."""
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise InvalidArgumentError("data must be bytes-like")
        result = cls(sec_ver=0)
        for number, wire, value in _iter_fields(bytes(data)):
            if number == _FIELD_SEC_VER:
                _expect(wire, _WIRE_VARINT, number)
                result.sec_ver = value
            elif number == _FIELD_SEC1:
                _expect(wire, _WIRE_LEN, number)
                result._decode_sec1(value)
        return result

    def _decode_sec1(self, data: bytes) -> None:
        self.msg = MsgType.SESSION_COMMAND0
        for number, wire, value in _iter_fields(data):
            if number == _FIELD_MSG:
                _expect(wire, _WIRE_VARINT, number)
                self.msg = _as_msg(value)
            elif _PAYLOAD_BASE <= number <= _PAYLOAD_BASE + 3:
                _expect(wire, _WIRE_LEN, number)
                self._decode_payload(MsgType(number - _PAYLOAD_BASE), value)

    def _decode_payload(self, kind: MsgType, data: bytes) -> None:
        layout = {
            MsgType.SESSION_COMMAND0: {1: "client_pubkey"},
            MsgType.SESSION_RESPONSE0: {1: "status", 2: "device_pubkey", 3: "device_random"},
            MsgType.SESSION_COMMAND1: {2: "client_verify_data"},
            MsgType.SESSION_RESPONSE1: {1: "status", 3: "device_verify_data"},
        }[kind]
        for number, wire, value in _iter_fields(data):
            name = layout.get(number)
            if name is None:
                continue
            if name == "status":
                _expect(wire, _WIRE_VARINT, number)
                try:
                    self.status = Status(value)
                except ValueError:
                    self.status = value
            else:
                _expect(wire, _WIRE_LEN, number)
                setattr(self, name, value)