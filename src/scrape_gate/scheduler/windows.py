"""Time-of-day window resolution."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time

from scrape_gate.models import ScheduleConfig, ScheduleWindow


@dataclass(frozen=True)
class WindowResolution:
    active_window: ScheduleWindow | None
    effective_interval_minutes: int

    @property
    def window_name(self) -> str | None:
        return self.active_window.name if self.active_window is not None else None


def resolve_window(now: time | datetime, config: ScheduleConfig) -> WindowResolution:
    """Return the first configured window containing ``now``, else the default cadence.

    Only the time-of-day of ``now`` is used. Aware datetimes should already be
    in the local zone the windows are written for.
    """
    moment = _time_of_day(now)
    for window in config.windows:
        if window_contains(window, moment):
            return WindowResolution(
                active_window=window,
                effective_interval_minutes=window.interval_minutes,
            )
    return WindowResolution(
        active_window=None,
        effective_interval_minutes=config.default_interval_minutes,
    )


def window_contains(window: ScheduleWindow, moment: time) -> bool:
    """Half-open ``[start, end)`` match that wraps past midnight when end < start."""
    value = _time_of_day(moment)
    start = window.start_time
    end = window.end_time
    if start == end:
        return False
    if start < end:
        return start <= value < end
    return value >= start or value < end


def _time_of_day(value: time | datetime) -> time:
    if isinstance(value, datetime):
        return value.time()
    return value.replace(tzinfo=None)
