"""Key distribution handshake, AES-CCM payload encryption and device utilities for ESP-NOW style networks."""

__version__ = "0.1.0"

__all__ = [
    "client_security1",
    "handshake",
    "initiator",
    "mem",
    "reboot",
    "sec1_proto",
    "security",
    "server_security1",
    "storage",
    "timesync",
    "utils",
]