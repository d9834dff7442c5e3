"""Shared utility functions for the TruStudSel session core.

This package provides convenience re-exports so that consumers can import
directly from ``trustudsel.utils`` (e.g. ``from trustudsel.utils import now_ms``)
while full absolute imports remain supported.
"""

from trustudsel.utils.clock import Clock, now_ms
from trustudsel.utils.general import convert_to_json_safe
from trustudsel.utils.timers import Cooldown, TimerGroup

__all__ = [
    "Clock",
    "Cooldown",
    "TimerGroup",
    "convert_to_json_safe",
    "now_ms",
]
