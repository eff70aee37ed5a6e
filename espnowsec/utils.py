"""Shared error types and MAC address helpers."""

from __future__ import annotations

import re

__all__ = [
    "EspError",
    "InvalidArgumentError",
    "InvalidStateError",
    "NotFoundError",
    "MAC_LEN",
    "mac_str2hex",
    "mac2str",
]

MAC_LEN = 6

# Each field works like a "%02x" conversion: optional leading whitespace,
# then one or two hex digits. The fields are separated by literal colons.
_HEX_FIELD = r"\s*([0-9A-Fa-f]{1,2})"
_MAC_PATTERN = re.compile(":".join([_HEX_FIELD] * MAC_LEN))


class EspError(Exception):
    """Base class for errors raised by this package."""


class InvalidArgumentError(EspError, ValueError):
    """An argument was missing, malformed or out of range."""


class InvalidStateError(EspError, RuntimeError):
    """The operation is not allowed in the current state."""


class NotFoundError(EspError, LookupError):
    """The requested item does not exist."""


def mac_str2hex(mac_str: str) -> bytes:
    """Parse a colon-separated MAC string such as ``"02:00:00:aa:bb:01"``.

    Text after the sixth field is ignored. Raises InvalidArgumentError when
    fewer than six fields can be read.
    """
    if not isinstance(mac_str, str):
        raise InvalidArgumentError("mac_str must be a string")
    match = _MAC_PATTERN.match(mac_str)
    if match is None:
        raise InvalidArgumentError(f"not a MAC address: {mac_str!r}")
    return bytes(int(field, 16) for field in match.groups())


def mac2str(mac: bytes) -> str:
    """Format six bytes as a lower-case, colon-separated MAC string."""
    mac = bytes(mac)
    if len(mac) != MAC_LEN:
        raise InvalidArgumentError(f"MAC address must be {MAC_LEN} bytes, got {len(mac)}")
    return ":".join(f"{octet:02x}" for octet in mac)