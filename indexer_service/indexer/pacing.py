"""Request pacing and retry backoff for the ingestion loop."""

from __future__ import annotations

import time
from typing import Callable, Optional


def backoff_delay(attempt: int, base: float, cap: float, retry_after: Optional[float] = None) -> float:
    """Exponential delay before retry number ``attempt`` (1-based), capped at ``cap``.

    A server-mandated ``retry_after`` raises the delay to at least that value,
    even above the cap.
    """
    delay = min(cap, base * (2 ** max(attempt - 1, 0)))
    if retry_after is not None:
        delay = max(delay, retry_after)
    return delay


class Pacer:
    """Enforce a minimum interval between successive RPC calls.

    ``wait`` is the sleep function; the loop passes ``stop_event.wait`` so
    shutdown interrupts a pending pause.

    Args:
        min_interval: Seconds between call starts; ``0`` disables pacing.
        clock: Monotonic clock.
        wait: Sleep function taking seconds.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        wait: Callable[[float], object] = time.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._wait = wait
        self._last_call: Optional[float] = None

    def pace(self) -> float:
        """Block until the next call is allowed; return the time waited."""
        waited = 0.0
        if self.min_interval > 0 and self._last_call is not None:
            remaining = self.min_interval - (self._clock() - self._last_call)
            if remaining > 0:
                self._wait(remaining)
                waited = remaining
        self._last_call = self._clock()
        return waited
