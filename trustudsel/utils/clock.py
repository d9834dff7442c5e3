"""Epoch-millisecond clock helpers."""

from __future__ import annotations

import time
from typing import Callable

Clock = Callable[[], int]
"""A zero-argument callable returning the current epoch time in ms."""


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000
