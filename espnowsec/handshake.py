"""Message types and wire records of the key-exchange handshake."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from typing import Union

from .utils import MAC_LEN, InvalidArgumentError, mac2str

__all__ = [
    "DataType",
    "SecType",
    "SecVersion",
    "SecInfo",
    "SecPacket",
    "SecResponder",
    "SecResult",
]

_INFO = struct.Struct(f"<BB{MAC_LEN}s")
_PACKET_HEAD = struct.Struct("<BB")
_PACKET_DATA_MAX = 0xFF


class DataType(enum.Enum):
    """Channels of the transport that the handshake uses."""

    SECURITY_STATUS = "security_status"
    SECURITY = "security"


class SecType(enum.IntEnum):
    """Kind of a handshake packet; always its first byte."""

    REQUEST = 0
    INFO = 1
    HANDSHAKE = 2
    KEY = 3
    KEY_RESP = 4
    REST = 5


class SecVersion(enum.IntEnum):
    """Security version a device reports."""

    NONE = 0
    V1_0 = 1
    V1_1 = 2


def _enum_or_int(kind: type, value: int) -> Union[enum.IntEnum, int]:
    try:
        return kind(value)
    except ValueError:
        return value


def _check_mac(mac: object, what: str) -> bytes:
    if not isinstance(mac, (bytes, bytearray, memoryview)):
        raise InvalidArgumentError(f"{what} must be bytes-like")
    mac = bytes(mac)
    if len(mac) != MAC_LEN:
        raise InvalidArgumentError(f"{what} must be {MAC_LEN} bytes, got {len(mac)}")
    return mac


@dataclass
class SecInfo:
    """Security status of a device: its version and the client that set it up."""

    type: int = SecType.REQUEST
    sec_ver: int = SecVersion.NONE
    client_mac: bytes = bytes(MAC_LEN)

    SIZE = _INFO.size

    def __post_init__(self) -> None:
        self.client_mac = _check_mac(self.client_mac, "client_mac")

    def pack(self) -> bytes:
        return _INFO.pack(int(self.type), int(self.sec_ver), self.client_mac)

    @classmethod
    def unpack(cls, data: bytes) -> "SecInfo":
        data = bytes(data)
        if len(data) < _INFO.size:
            raise InvalidArgumentError(
                f"security info needs {_INFO.size} bytes, got {len(data)}"
            )
        kind, version, mac = _INFO.unpack_from(data)
        return cls(_enum_or_int(SecType, kind), _enum_or_int(SecVersion, version), mac)


@dataclass
class SecPacket:
    """A handshake message: type byte, length byte, then the message."""

    type: int = SecType.HANDSHAKE
    data: bytes = b""

    def __post_init__(self) -> None:
        self.data = bytes(self.data)
        if len(self.data) > _PACKET_DATA_MAX:
            raise InvalidArgumentError(
                f"packet data is {len(self.data)} bytes, at most {_PACKET_DATA_MAX}"
            )

    @property
    def size(self) -> int:
        return len(self.data)

    def pack(self) -> bytes:
        return _PACKET_HEAD.pack(int(self.type), len(self.data)) + self.data

    @classmethod
    def unpack(cls, data: bytes) -> "SecPacket":
        data = bytes(data)
        if len(data) < _PACKET_HEAD.size:
            raise InvalidArgumentError("packet is shorter than its header")
        kind, size = _PACKET_HEAD.unpack_from(data)
        body = data[_PACKET_HEAD.size : _PACKET_HEAD.size + size]
        if len(body) < size:
            raise InvalidArgumentError(
                f"packet announces {size} bytes but holds {len(body)}"
            )
        return cls(_enum_or_int(SecType, kind), body)


@dataclass(frozen=True)
class SecResponder:
    """A device found by a scan."""

    mac: bytes
    rssi: int
    channel: int
    sec_ver: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "mac", _check_mac(self.mac, "mac"))

    def __str__(self) -> str:
        return (
            f"{mac2str(self.mac)} channel {self.channel} rssi {self.rssi} "
            f"version {int(self.sec_ver)}"
        )


@dataclass
class SecResult:
    """Which devices did and did not receive the key."""

    unfinished: list[bytes] = field(default_factory=list)
    succeeded: list[bytes] = field(default_factory=list)
    requested: list[bytes] = field(default_factory=list)

    @property
    def unfinished_num(self) -> int:
        return len(self.unfinished)

    @property
    def succeeded_num(self) -> int:
        return len(self.succeeded)

    @property
    def requested_num(self) -> int:
        return len(self.requested)

    def clear(self) -> None:
        self.unfinished.clear()
        self.succeeded.clear()
        self.requested.clear()