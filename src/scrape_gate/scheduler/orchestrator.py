"""Single-shot run orchestration: resolve window, gate, run, finalize.

Each invocation walks ``IDLE -> RESOLVING -> GATING -> {SKIPPED | RUNNING ->
FINALIZING} -> IDLE`` exactly once. Periodicity comes from whatever calls
this module (a timer unit, cron, a supervising process); nothing here loops
or sleeps except the throttle delays between fetch steps.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from pathlib import Path
import random
import time as time_module
from typing import Any
from zoneinfo import ZoneInfo

from scrape_gate.config import (
    LEASE_FILENAME,
    STATE_FILENAME,
    RuntimeConfig,
    load_runtime_config,
    resolve_events_path,
    resolve_state_dir,
)
from scrape_gate.diagnostics.events import EventType, JsonlEventLogger
from scrape_gate.errors import (
    BlockedError,
    ConfigError,
    DiagnosticsError,
    LeaseError,
    LeaseHeldError,
    StateReadError,
    StateWriteError,
)
from scrape_gate.fetch.base import FetchCollaborator
from scrape_gate.fetch.pages import PlaywrightPageSequence
from scrape_gate.logging import enable_debug, get_logger
from scrape_gate.models import RunOutcome, RunState, StepOutcome, StepResult
from scrape_gate.scheduler.gate import Deny, decide, next_eligible_at
from scrape_gate.scheduler.throttle import Throttle
from scrape_gate.scheduler.windows import WindowResolution, resolve_window
from scrape_gate.store.lease import FileLease
from scrape_gate.store.state import RunStateStore

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], None]
MonotonicFn = Callable[[], float]

DEFAULT_WINDOW_LABEL = "default"

logger = get_logger(__name__)


class InvocationPhase(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    GATING = "gating"
    SKIPPED = "skipped"
    RUNNING = "running"
    FINALIZING = "finalizing"


class RunStatus(IntEnum):
    """Stable invocation status matrix; also the CLI exit code."""

    RAN_SUCCESSFULLY = 0
    RAN_WITH_FAILURE = 1
    CONFIG_ERROR = 2
    SKIPPED = 3


@dataclass(frozen=True)
class RunReport:
    outcome: RunOutcome
    duration_seconds: float
    step_counts: dict[str, int]
    steps: tuple[StepResult, ...] = ()
    error: str | None = None
    interrupted: bool = False
    state_written: bool = False
    state_error: str | None = None


@dataclass(frozen=True)
class InvocationResult:
    status: RunStatus
    run_id: str
    started_at: datetime | None = None
    window_name: str | None = None
    effective_interval_minutes: int | None = None
    skip_reason: str | None = None
    elapsed_minutes: float | None = None
    wait_remaining_minutes: float | None = None
    previous_run_at: datetime | None = None
    lease_holder: dict[str, Any] = field(default_factory=dict)
    run: RunReport | None = None
    error: str | None = None


class RunOrchestrator:
    """Drive one invocation against an already-loaded configuration."""

    def __init__(
        self,
        config: RuntimeConfig,
        collaborator: FetchCollaborator,
        *,
        state_store: RunStateStore,
        lease: FileLease,
        now_fn: NowFn | None = None,
        sleep_fn: SleepFn | None = None,
        monotonic_fn: MonotonicFn | None = None,
        rng: random.Random | None = None,
        deadline_seconds: float | None = None,
        event_logger: JsonlEventLogger | None = None,
        run_id: str | None = None,
    ) -> None:
        self.config = config
        self.collaborator = collaborator
        self.state_store = state_store
        self.lease = lease
        self._zone = ZoneInfo(config.app.timezone)
        self._now = now_fn or (lambda: datetime.now(self._zone))
        self._sleep = sleep_fn or time_module.sleep
        self._monotonic = monotonic_fn or time_module.monotonic
        self._rng = rng
        resolved_deadline = deadline_seconds if deadline_seconds is not None else config.run.deadline_seconds
        self.deadline_seconds = float(resolved_deadline) if resolved_deadline and resolved_deadline > 0 else None
        self.event_logger = event_logger
        self.run_id = run_id or _new_run_id("run")
        self.phase = InvocationPhase.IDLE

    def invoke(self) -> InvocationResult:
        # One clock read per invocation; every comparison below uses it.
        now = _normalize_datetime(self._now()).astimezone(self._zone)

        self._transition(InvocationPhase.RESOLVING)
        resolution = resolve_window(now, self.config.schedule)
        window_label = resolution.window_name or DEFAULT_WINDOW_LABEL

        self._transition(InvocationPhase.GATING)
        try:
            self.lease.acquire()
        except LeaseHeldError as exc:
            return self._skip_for_lease(now, resolution, exc.holder, str(exc))
        except LeaseError as exc:
            logger.error("lease unavailable path=%s error=%s", self.lease.path, exc)
            return self._skip_for_lease(now, resolution, {}, str(exc), reason="lease_unavailable")

        try:
            previous = self._load_previous_state(now)
            previous_run_at = previous.last_run_timestamp if previous is not None else None
            decision = decide(now, resolution.effective_interval_minutes, previous_run_at)
            if isinstance(decision, Deny):
                self._transition(InvocationPhase.SKIPPED)
                logger.info(
                    "run skipped reason=interval window=%s interval_minutes=%d "
                    "elapsed_minutes=%.1f wait_remaining_minutes=%.1f",
                    window_label,
                    resolution.effective_interval_minutes,
                    decision.elapsed_minutes,
                    decision.wait_remaining_minutes,
                )
                self._emit(
                    EventType.INVOCATION_SKIPPED,
                    window=resolution.window_name,
                    payload={
                        "reason": "interval",
                        "interval_minutes": resolution.effective_interval_minutes,
                        "elapsed_minutes": round(decision.elapsed_minutes, 3),
                        "wait_remaining_minutes": round(decision.wait_remaining_minutes, 3),
                    },
                )
                return InvocationResult(
                    status=RunStatus.SKIPPED,
                    run_id=self.run_id,
                    started_at=now,
                    window_name=resolution.window_name,
                    effective_interval_minutes=resolution.effective_interval_minutes,
                    skip_reason="interval",
                    elapsed_minutes=decision.elapsed_minutes,
                    wait_remaining_minutes=decision.wait_remaining_minutes,
                    previous_run_at=previous_run_at,
                )

            self._transition(InvocationPhase.RUNNING)
            logger.info(
                "run started window=%s interval_minutes=%d run_id=%s",
                window_label,
                resolution.effective_interval_minutes,
                self.run_id,
            )
            self._emit(
                EventType.RUN_STARTED,
                window=resolution.window_name,
                payload={
                    "interval_minutes": resolution.effective_interval_minutes,
                    "previous_run_at": previous_run_at.isoformat() if previous_run_at else None,
                },
            )
            report = self._run_steps(resolution)

            self._transition(InvocationPhase.FINALIZING)
            report = self._finalize(now, resolution, report)
        finally:
            self._release_lease()
            self._transition(InvocationPhase.IDLE)

        if report.interrupted:
            raise KeyboardInterrupt

        status = (
            RunStatus.RAN_SUCCESSFULLY
            if report.outcome.counts_as_success
            else RunStatus.RAN_WITH_FAILURE
        )
        return InvocationResult(
            status=status,
            run_id=self.run_id,
            started_at=now,
            window_name=resolution.window_name,
            effective_interval_minutes=resolution.effective_interval_minutes,
            elapsed_minutes=decision.elapsed_minutes,
            previous_run_at=previous_run_at,
            run=report,
        )

    def _run_steps(self, resolution: WindowResolution) -> RunReport:
        throttle = Throttle(self.config.throttle, rng=self._rng)
        counts = {outcome.value: 0 for outcome in StepOutcome}
        steps: list[StepResult] = []
        outcome: RunOutcome | None = None
        error: str | None = None
        interrupted = False
        started = self._monotonic()
        iterator: Iterator[StepResult] | None = None

        try:
            iterator = iter(self.collaborator.perform_run())
            while True:
                if steps:
                    delay = throttle.next_delay()
                    remaining = self._deadline_remaining(started)
                    if remaining is not None and remaining <= delay:
                        self._sleep(max(0.0, remaining))
                        outcome, error = RunOutcome.ABANDONED, "deadline_exceeded"
                        break
                    self._sleep(delay)
                remaining = self._deadline_remaining(started)
                if remaining is not None and remaining <= 0:
                    outcome, error = RunOutcome.ABANDONED, "deadline_exceeded"
                    break

                try:
                    step = next(iterator)
                except StopIteration:
                    break
                steps.append(step)
                counts[step.outcome.value] += 1
                self._record_step(step, resolution, index=len(steps))
                self._heartbeat()
                if step.outcome is StepOutcome.BLOCKED:
                    outcome, error = RunOutcome.BLOCKED, step.detail or "blocked"
                    break
        except BlockedError as exc:
            outcome, error = RunOutcome.BLOCKED, str(exc)
        except KeyboardInterrupt:
            outcome, error, interrupted = RunOutcome.ABANDONED, "interrupted", True
        except Exception as exc:
            logger.warning("fetch sequence raised run_id=%s error=%s", self.run_id, exc, exc_info=True)
            outcome, error = RunOutcome.FAILED, str(exc)
        finally:
            _close_iterator(iterator)

        if outcome is None:
            outcome = classify_run(counts)
        return RunReport(
            outcome=outcome,
            duration_seconds=max(0.0, self._monotonic() - started),
            step_counts=counts,
            steps=tuple(steps),
            error=error,
            interrupted=interrupted,
        )

    def _finalize(self, now: datetime, resolution: WindowResolution, report: RunReport) -> RunReport:
        # Failed and blocked runs still consume the interval.
        state = RunState(
            last_run_timestamp=now.astimezone(timezone.utc),
            last_window_name=resolution.window_name,
            last_outcome=report.outcome,
            last_duration_seconds=round(report.duration_seconds, 3),
            step_counts=dict(report.step_counts),
            run_id=self.run_id,
        )
        state_error: str | None = None
        try:
            self.state_store.save(state)
        except StateWriteError as exc:
            state_error = str(exc)
            logger.error("state write failed path=%s error=%s", self.state_store.path, exc)
            self._emit(EventType.STATE_WRITE_FAILED, window=resolution.window_name, payload={"error": state_error})

        logger.info(
            "run finished outcome=%s duration_seconds=%.1f %s%s",
            report.outcome.value,
            report.duration_seconds,
            format_step_counts(report.step_counts),
            f" error={report.error}" if report.error else "",
        )
        self._emit(
            EventType.RUN_FINISHED,
            window=resolution.window_name,
            payload={
                "outcome": report.outcome.value,
                "duration_seconds": round(report.duration_seconds, 3),
                "step_counts": dict(report.step_counts),
                "error": report.error,
                "state_written": state_error is None,
            },
        )
        return RunReport(
            outcome=report.outcome,
            duration_seconds=report.duration_seconds,
            step_counts=report.step_counts,
            steps=report.steps,
            error=report.error,
            interrupted=report.interrupted,
            state_written=state_error is None,
            state_error=state_error,
        )

    def _load_previous_state(self, now: datetime) -> RunState | None:
        try:
            return load_previous_state(
                self.state_store, now, max_future_skew_seconds=self.config.run.max_future_skew_seconds
            )
        except StateReadError as exc:
            logger.info("no prior run path=%s reason=%s", self.state_store.path, exc)
            return None

    def _skip_for_lease(
        self,
        now: datetime,
        resolution: WindowResolution,
        holder: dict[str, Any],
        message: str,
        *,
        reason: str = "lease_held",
    ) -> InvocationResult:
        self._transition(InvocationPhase.SKIPPED)
        logger.info(
            "run skipped reason=%s window=%s holder=%s",
            reason,
            resolution.window_name or DEFAULT_WINDOW_LABEL,
            holder.get("holder_id") or "unknown",
        )
        self._emit(
            EventType.INVOCATION_SKIPPED,
            window=resolution.window_name,
            payload={"reason": reason, "holder": holder},
        )
        self._transition(InvocationPhase.IDLE)
        return InvocationResult(
            status=RunStatus.SKIPPED,
            run_id=self.run_id,
            started_at=now,
            window_name=resolution.window_name,
            effective_interval_minutes=resolution.effective_interval_minutes,
            skip_reason=reason,
            lease_holder=holder,
            error=message,
        )

    def _record_step(self, step: StepResult, resolution: WindowResolution, *, index: int) -> None:
        logger.debug(
            "run step index=%d name=%s outcome=%s status_code=%s detail=%s",
            index,
            step.name,
            step.outcome.value,
            step.status_code,
            step.detail,
        )
        self._emit(
            EventType.RUN_STEP,
            window=resolution.window_name,
            payload={
                "index": index,
                "name": step.name,
                "outcome": step.outcome.value,
                "status_code": step.status_code,
                "detail": step.detail,
                "payload_bytes": step.payload_bytes,
            },
        )

    def _release_lease(self) -> None:
        try:
            self.lease.release()
        except LeaseError as exc:
            logger.warning("lease release failed path=%s error=%s", self.lease.path, exc)

    def _heartbeat(self) -> None:
        try:
            self.lease.heartbeat()
        except LeaseError as exc:
            logger.warning("lease heartbeat failed path=%s error=%s", self.lease.path, exc)

    def _deadline_remaining(self, started: float) -> float | None:
        if self.deadline_seconds is None:
            return None
        return self.deadline_seconds - (self._monotonic() - started)

    def _transition(self, phase: InvocationPhase) -> None:
        logger.debug("invocation phase run_id=%s from=%s to=%s", self.run_id, self.phase.value, phase.value)
        self.phase = phase

    def _emit(self, event_type: EventType, *, window: str | None, payload: dict[str, Any]) -> None:
        if self.event_logger is None:
            return
        try:
            self.event_logger.append(event_type, run_id=self.run_id, window=window, payload=payload)
        except DiagnosticsError as exc:
            logger.warning("event append failed type=%s error=%s", event_type.value, exc)


def run_configured_invocation(
    config_path: str | Path | None = None,
    *,
    collaborator: FetchCollaborator | None = None,
    now_fn: NowFn | None = None,
    sleep_fn: SleepFn | None = None,
    monotonic_fn: MonotonicFn | None = None,
    rng: random.Random | None = None,
    deadline_seconds: float | None = None,
    event_logger: JsonlEventLogger | None = None,
    run_id: str | None = None,
) -> InvocationResult:
    """Load configuration fresh and run one invocation end to end.

    Configuration problems never raise out of here: they come back as
    ``RunStatus.CONFIG_ERROR`` before any lease or state file is touched.
    """
    resolved_run_id = run_id or _new_run_id("run")
    try:
        config = load_runtime_config(config_path)
        if config.app.debug:
            enable_debug()
        if collaborator is None:
            if not config.fetch.urls:
                raise ConfigError(
                    "No fetch targets configured. Set [fetch] base_url and paths in the config file."
                )
            collaborator = PlaywrightPageSequence(config.fetch)
        if event_logger is None:
            events_path = resolve_events_path(config, config_path)
            if events_path is not None:
                event_logger = JsonlEventLogger(events_path)
    except ConfigError as exc:
        logger.error("configuration error run_id=%s error=%s", resolved_run_id, exc)
        return InvocationResult(status=RunStatus.CONFIG_ERROR, run_id=resolved_run_id, error=str(exc))
    except DiagnosticsError as exc:
        logger.warning("event log unavailable error=%s", exc)
        event_logger = None

    state_dir = resolve_state_dir(config, config_path)
    orchestrator = RunOrchestrator(
        config,
        collaborator,
        state_store=RunStateStore(state_dir / STATE_FILENAME),
        lease=FileLease(
            state_dir / LEASE_FILENAME,
            stale_after_seconds=config.lease.stale_after_seconds,
        ),
        now_fn=now_fn,
        sleep_fn=sleep_fn,
        monotonic_fn=monotonic_fn,
        rng=rng,
        deadline_seconds=deadline_seconds,
        event_logger=event_logger,
        run_id=resolved_run_id,
    )
    return orchestrator.invoke()


@dataclass(frozen=True)
class ScheduleStatus:
    now: datetime
    window_name: str | None
    effective_interval_minutes: int
    last_run: RunState | None
    state_error: str | None
    next_eligible_at: datetime | None
    would_run: bool
    lease_holder: dict[str, Any] | None
    lease_stale: bool | None


def inspect_schedule(
    config: RuntimeConfig,
    *,
    config_path: str | Path | None = None,
    now_fn: NowFn | None = None,
) -> ScheduleStatus:
    """Read-only view of what the next invocation would decide right now."""
    zone = ZoneInfo(config.app.timezone)
    now = _normalize_datetime((now_fn or (lambda: datetime.now(zone)))()).astimezone(zone)
    resolution = resolve_window(now, config.schedule)
    state_dir = resolve_state_dir(config, config_path)

    last_run: RunState | None = None
    state_error: str | None = None
    try:
        last_run = load_previous_state(
            RunStateStore(state_dir / STATE_FILENAME),
            now,
            max_future_skew_seconds=config.run.max_future_skew_seconds,
        )
    except StateReadError as exc:
        state_error = str(exc)

    lease = FileLease(
        state_dir / LEASE_FILENAME,
        stale_after_seconds=config.lease.stale_after_seconds,
    )
    holder = lease.current_holder()
    last_run_at = last_run.last_run_timestamp if last_run is not None else None
    decision = decide(now, resolution.effective_interval_minutes, last_run_at)
    return ScheduleStatus(
        now=now,
        window_name=resolution.window_name,
        effective_interval_minutes=resolution.effective_interval_minutes,
        last_run=last_run,
        state_error=state_error,
        next_eligible_at=(
            next_eligible_at(last_run_at, resolution.effective_interval_minutes).astimezone(zone)
            if last_run_at is not None
            else None
        ),
        would_run=decision.permitted,
        lease_holder=holder.to_dict() if holder is not None else None,
        lease_stale=lease.holder_is_stale() if holder is not None else None,
    )


def load_previous_state(
    store: RunStateStore, now: datetime, *, max_future_skew_seconds: int
) -> RunState:
    """Load the last run record, rejecting one stamped too far ahead of ``now``.

    A far-future timestamp would deny every invocation until the clock caught
    up, so it is reported as unreadable state and the gate sees no prior run.
    """
    state = store.load()
    skew = timedelta(seconds=max_future_skew_seconds)
    if state.last_run_timestamp - now.astimezone(timezone.utc) > skew:
        raise StateReadError(
            f"Run state '{store.path}' records last run {state.last_run_timestamp.isoformat()} "
            "which is in the future."
        )
    return state


def classify_run(step_counts: dict[str, int]) -> RunOutcome:
    """Collapse per-step classifications into the run outcome."""
    total = sum(step_counts.values())
    if step_counts.get(StepOutcome.BLOCKED.value, 0) > 0:
        return RunOutcome.BLOCKED
    if total == 0:
        return RunOutcome.SUCCESS
    succeeded = step_counts.get(StepOutcome.SUCCESS.value, 0)
    if succeeded == total:
        return RunOutcome.SUCCESS
    if succeeded + step_counts.get(StepOutcome.PARTIAL.value, 0) > 0:
        return RunOutcome.PARTIAL
    return RunOutcome.FAILED


def format_step_counts(step_counts: dict[str, int]) -> str:
    return " ".join(f"{outcome.value}={step_counts.get(outcome.value, 0)}" for outcome in StepOutcome)


def _close_iterator(iterator: Iterator[StepResult] | None) -> None:
    close = getattr(iterator, "close", None)
    if not callable(close):
        return
    try:
        close()
    except Exception as exc:
        logger.warning("fetch sequence cleanup failed error=%s", exc)


def _normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _new_run_id(prefix: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{prefix}-{stamp}"
