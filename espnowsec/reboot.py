"""Counting of restarts and detection of crash dumps."""

from __future__ import annotations

import enum
import logging
import os
import struct
from dataclasses import dataclass
from typing import Union

from .storage import Storage
from .utils import InvalidArgumentError, NotFoundError

__all__ = [
    "ResetReason",
    "RebootRecord",
    "RebootTracker",
    "REBOOT_RECORD_KEY",
    "is_exception",
]

REBOOT_RECORD_KEY = "reboot_record"

_log = logging.getLogger("esp_reboot")
_RECORD = struct.Struct("<IIi")
_COREDUMP_LEN = struct.Struct("<i")


class ResetReason(enum.IntEnum):
    """Reasons the chip reports for its last reset."""

    NO_MEAN = 0
    POWERON_RESET = 1
    SW_RESET = 3
    OWDT_RESET = 4
    DEEPSLEEP_RESET = 5
    SDIO_RESET = 6
    TG0WDT_SYS_RESET = 7
    TG1WDT_SYS_RESET = 8
    RTCWDT_SYS_RESET = 9
    INTRUSION_RESET = 10
    TGWDT_CPU_RESET = 11
    SW_CPU_RESET = 12
    RTCWDT_CPU_RESET = 13
    EXT_CPU_RESET = 14
    RTCWDT_BROWN_OUT_RESET = 15
    RTCWDT_RTC_RESET = 16


def _as_reason(value: int) -> Union[ResetReason, int]:
    try:
        return ResetReason(value)
    except ValueError:
        return value


@dataclass
class RebootRecord:
    """Restart counters as they are persisted between boots."""

    total_count: int = 0
    unbroken_count: int = 0
    reason: int = ResetReason.NO_MEAN

    def pack(self) -> bytes:
        return _RECORD.pack(self.total_count, self.unbroken_count, int(self.reason))

    @classmethod
    def unpack(cls, data: bytes) -> "RebootRecord":
        if len(data) != _RECORD.size:
            raise InvalidArgumentError(
                f"reboot record must be {_RECORD.size} bytes, got {len(data)}"
            )
        total, unbroken, reason = _RECORD.unpack(data)
        return cls(total, unbroken, _as_reason(reason))


class RebootTracker:
    """Keeps the total and consecutive restart counts in a Storage."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage
        self.record = RebootRecord()

    def _load(self) -> RebootRecord:
        try:
            return RebootRecord.unpack(self.storage.get(REBOOT_RECORD_KEY))
        except (NotFoundError, InvalidArgumentError):
            return RebootRecord()

    def _save(self) -> None:
        self.storage.set(REBOOT_RECORD_KEY, self.record.pack())

    def record_boot(self, reason: int) -> RebootRecord:
        """Count one boot caused by ``reason`` and persist the counters.

        A wake from deep sleep or a brown-out starts the consecutive count
        again at one; any other reset adds to it.
        """
        record = self._load()
        record.reason = _as_reason(int(reason))
        record.total_count += 1
        if record.reason not in (
            ResetReason.DEEPSLEEP_RESET,
            ResetReason.RTCWDT_BROWN_OUT_RESET,
        ):
            record.unbroken_count += 1
            _log.debug("reboot unbroken count: %d", record.unbroken_count)
        else:
            record.unbroken_count = 1
            _log.warning("reboot reason: %d", int(record.reason))
        self.record = record
        self._save()
        return record

    def clear_unbroken(self) -> None:
        """Reset the consecutive count once the device has run long enough."""
        self.record.unbroken_count = 0
        self._save()
        _log.info(
            "num: %d, reason: %d", self.record.total_count, int(self.record.reason)
        )

    def unbroken_count(self) -> int:
        return self.record.unbroken_count

    def total_count(self) -> int:
        return self.record.total_count

    def should_fall_back(self, limit: int) -> bool:
        """Whether ``limit`` (non-zero) consecutive restarts have been reached."""
        return bool(limit) and self.record.unbroken_count >= limit


def is_exception(
    coredump_path: Union[str, os.PathLike], erase_coredump: bool = False
) -> bool:
    """Whether the core-dump area holds a dump from a crash.

    The area starts with the dump length; a positive length means a dump is
    present. With ``erase_coredump`` the whole area is erased to 0xFF.
    """
    try:
        with open(coredump_path, "rb") as handle:
            header = handle.read(_COREDUMP_LEN.size)
    except OSError as exc:
        _log.warning("coredump read failed: %s", exc)
        return False
    if len(header) < _COREDUMP_LEN.size:
        return False
    (length,) = _COREDUMP_LEN.unpack(header)
    if length <= 0:
        return False
    if erase_coredump:
        try:
            size = os.path.getsize(coredump_path)
            with open(coredump_path, "r+b") as handle:
                handle.write(b"\xff" * size)
        except OSError as exc:
            _log.warning("coredump erase failed: %s", exc)
            return False
    return True