"""Checks that the wall clock has been set."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .utils import EspError

__all__ = ["REF_TIME", "timesync_check", "timesync_wait"]

REF_TIME = 1577808000  # 2020-01-01 00:00:00
_STEP_MS = 2000

_log = logging.getLogger("esp_timesync")


def timesync_check(now: Optional[float] = None) -> bool:
    """Whether ``now`` (the current time by default) lies after REF_TIME."""
    if now is None:
        now = time.time()
    return now > REF_TIME


def timesync_wait(
    wait_ms: int,
    clock: Optional[Callable[[], float]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> float:
    """Wait up to ``wait_ms`` milliseconds for the clock to be set.

    The clock is polled every two seconds at most. Returns the current time;
    raises EspError if it is still unset when the wait is over.
    """
    clock = clock or time.time
    sleep = sleep or time.sleep
    if wait_ms < 0:
        raise ValueError("wait_ms must not be negative")

    _log.warning("Waiting for time to be synchronized. This may take time.")
    remaining = wait_ms
    while remaining > 0:
        if timesync_check(clock()):
            break
        _log.debug("Time not synchronized yet. Retrying...")
        step = min(remaining, _STEP_MS)
        remaining -= step
        sleep(step / 1000)

    now = clock()
    if not timesync_check(now):
        _log.error("Time not synchronized within the provided time: %d ms", wait_ms)
        raise EspError(f"time not synchronized within {wait_ms} ms")

    _log.info("The current UTC time is: %s", time.strftime("%c", time.gmtime(now)))
    return now