"""Bookkeeping of outstanding allocations, for leak hunting."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Hashable, Optional

__all__ = ["MemoryRecord", "MemoryRecorder", "DEFAULT_CAPACITY"]

DEFAULT_CAPACITY = 256

_log = logging.getLogger("esp_mem")


@dataclass(frozen=True)
class MemoryRecord:
    """One outstanding allocation."""

    ptr: Hashable
    size: int
    tag: str
    line: int
    timestamp: int = field(default=0)

    def describe(self) -> str:
        ptr = f"0x{self.ptr:08x}" if isinstance(self.ptr, int) else repr(self.ptr)
        return f"({self.timestamp}) <{self.tag}: {self.line}> ptr: {ptr}, size: {self.size}"


class MemoryRecorder:
    """A fixed-capacity table of allocations that have not been released."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._slots: list[Optional[MemoryRecord]] = [None] * capacity
        self._count = 0
        self._lock = threading.Lock()
        self._start = time.monotonic()

    def __len__(self) -> int:
        return self._count

    @property
    def capacity(self) -> int:
        return len(self._slots)

    def _timestamp(self) -> int:
        return int((time.monotonic() - self._start) * 1000)

    def add_record(self, ptr: Hashable, size: int, tag: str, line: int) -> bool:
        """Record an allocation; returns whether it was stored.

        Allocations without a pointer, size or tag are ignored. When the table
        is full the record is dropped and the table is reported.
        """
        if not ptr or not size or not tag:
            return False
        _log.debug("<%s : %d> Alloc ptr: %r, size: %d", tag, line, ptr, size)

        if self._count >= len(self._slots):
            _log.error("The buffer space of the memory record is full")
            self.report()
            return False

        record = MemoryRecord(ptr, size, tag, line, self._timestamp())
        with self._lock:
            for index, slot in enumerate(self._slots):
                if slot is None:
                    self._slots[index] = record
                    self._count += 1
                    return True
        return False

    def remove_record(self, ptr: Hashable) -> bool:
        """Forget the first record for ``ptr``; returns whether one was found."""
        if not ptr:
            return False
        _log.debug("Free ptr: %r", ptr)
        with self._lock:
            for index, slot in enumerate(self._slots):
                if slot is not None and slot.ptr == ptr:
                    self._slots[index] = None
                    self._count -= 1
                    return True
        return False

    def records(self) -> list[MemoryRecord]:
        """The outstanding records, in table order."""
        with self._lock:
            return [slot for slot in self._slots if slot is not None]

    def total_size(self) -> int:
        """Sum of the sizes of all outstanding records."""
        return sum(record.size for record in self.records())

    def report(self) -> str:
        """Log and return a listing of every outstanding record."""
        records = self.records()
        if not records:
            _log.warning("Memory record is empty")
            return "Memory record is empty"
        lines = [record.describe() for record in records]
        total = sum(record.size for record in records)
        lines.append(f"Memory record, num: {len(records)}, size: {total}")
        for text in lines:
            _log.info("%s", text)
        return "\n".join(lines)