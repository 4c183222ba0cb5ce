"""Fixed-window arithmetic.

All timestamps are UNIX epoch milliseconds. Windows are aligned to the epoch
so every process computes identical boundaries for the same instant.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass


@dataclass(frozen=True)
class Window:
    """Boundaries of one fixed window.

    Attributes:
        window_id: floor(now_ms / window_ms).
        start_ms: Inclusive window start.
        end_ms: Exclusive window end (also the reset time).
    """

    window_id: int
    start_ms: int
    end_ms: int

    def retry_after_seconds(self, now_ms: int) -> int:
        """Whole seconds until the window resets, rounded up."""
        return max(0, math.ceil((self.end_ms - now_ms) / 1000))


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def window_id(now: int, window_seconds: int) -> int:
    return now // (window_seconds * 1000)


def window_start(now: int, window_seconds: int) -> int:
    return window_id(now, window_seconds) * window_seconds * 1000


def window_for(now: int, window_seconds: int) -> Window:
    """Compute the window containing ``now``.

    Args:
        now: Timestamp in epoch milliseconds.
        window_seconds: Window length in seconds.

    Returns:
        Window with id and boundaries.
    """
    if window_seconds < 1:
        raise ValueError("window_seconds must be >= 1")
    wid = window_id(now, window_seconds)
    start = wid * window_seconds * 1000
    return Window(window_id=wid, start_ms=start, end_ms=start + window_seconds * 1000)
