"""Uptime clock and the condition debouncer.

Update operations can span wall-clock changes (time sync after a reboot, time zone
updates), so every duration here is measured with a monotonic clock.
"""

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], None]


def uptime() -> float:
    """Return monotonic seconds since an arbitrary fixed point (boot on Windows)."""
    return time.monotonic()


def wait_until_stable(
    condition: Callable[[], bool],
    debounce_seconds: int,
    clock: Clock = uptime,
    sleep: Sleep = time.sleep,
) -> None:
    """Block until ``condition`` has held continuously for ``debounce_seconds``.

    The condition is polled once per second. A reading that is false, or that
    raises, restarts the timer. There is no timeout.
    """
    begin = clock()
    while True:
        sleep(1)
        try:
            stable = bool(condition())
        except Exception as e:  # noqa: BLE001
            logger.debug(f"Condition evaluation failed, treating as false: {e}")
            stable = False
        if not stable:
            begin = clock()
            continue
        if clock() - begin >= debounce_seconds:
            return
