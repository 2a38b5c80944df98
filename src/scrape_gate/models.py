"""Data model contracts for cross-module use."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum


class StepOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    BLOCKED = "blocked"


class RunOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    BLOCKED = "blocked"
    ABANDONED = "abandoned"

    @property
    def counts_as_success(self) -> bool:
        return self in (RunOutcome.SUCCESS, RunOutcome.PARTIAL)


@dataclass(frozen=True)
class ScheduleWindow:
    name: str
    start_time: time
    end_time: time
    interval_minutes: int

    @property
    def crosses_midnight(self) -> bool:
        return self.end_time < self.start_time


@dataclass(frozen=True)
class ScheduleConfig:
    windows: tuple[ScheduleWindow, ...] = ()
    default_interval_minutes: int = 10


@dataclass(frozen=True)
class ThrottleSpec:
    min_delay_seconds: float = 2.0
    max_delay_seconds: float = 6.0


@dataclass(frozen=True)
class RunState:
    last_run_timestamp: datetime
    last_window_name: str | None = None
    last_outcome: RunOutcome | None = None
    last_duration_seconds: float | None = None
    step_counts: dict[str, int] = field(default_factory=dict)
    run_id: str | None = None


@dataclass(frozen=True)
class StepResult:
    name: str
    outcome: StepOutcome
    detail: str | None = None
    status_code: int | None = None
    payload_bytes: int = 0
