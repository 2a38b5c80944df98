"""Run gate: permit or deny a run from the last recorded run instant."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from scrape_gate.errors import SchedulerError


@dataclass(frozen=True)
class Permit:
    elapsed_minutes: float | None = None

    @property
    def permitted(self) -> bool:
        return True


@dataclass(frozen=True)
class Deny:
    wait_remaining_minutes: float
    elapsed_minutes: float

    @property
    def permitted(self) -> bool:
        return False


GateDecision = Permit | Deny


def decide(
    now: datetime,
    effective_interval_minutes: int,
    last_run_timestamp: datetime | None,
) -> GateDecision:
    """Permit once at least the effective interval has elapsed since the last run.

    ``now`` must be the single instant captured at invocation start; the
    comparison is done on timedeltas so the boundary is exact.
    """
    if effective_interval_minutes <= 0:
        raise SchedulerError("effective_interval_minutes must be > 0.")
    if last_run_timestamp is None:
        return Permit()

    elapsed = _as_utc(now) - _as_utc(last_run_timestamp)
    required = timedelta(minutes=effective_interval_minutes)
    elapsed_minutes = elapsed.total_seconds() / 60.0
    if elapsed >= required:
        return Permit(elapsed_minutes=elapsed_minutes)
    return Deny(
        wait_remaining_minutes=(required - elapsed).total_seconds() / 60.0,
        elapsed_minutes=elapsed_minutes,
    )


def next_eligible_at(last_run_timestamp: datetime, effective_interval_minutes: int) -> datetime:
    """Earliest instant the gate permits again under the given interval."""
    return _as_utc(last_run_timestamp) + timedelta(minutes=effective_interval_minutes)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
