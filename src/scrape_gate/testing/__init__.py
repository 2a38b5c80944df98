"""Test-only utilities for deterministic scheduler assertions."""

from .time_control import MonotonicClock, SleepRecorder, fixed_now, sequenced_now

__all__ = [
    "MonotonicClock",
    "SleepRecorder",
    "fixed_now",
    "sequenced_now",
]
