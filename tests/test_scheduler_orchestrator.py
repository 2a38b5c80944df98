"""Single-invocation orchestration behavior."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
import json
import logging
from pathlib import Path
import random
from zoneinfo import ZoneInfo

import pytest

from scrape_gate.config import AppConfig, RuntimeConfig, load_runtime_config
from scrape_gate.diagnostics.events import JsonlEventLogger
from scrape_gate.errors import BlockedError, StateWriteError
from scrape_gate.models import (
    RunOutcome,
    RunState,
    ScheduleConfig,
    ScheduleWindow,
    StepOutcome,
    StepResult,
    ThrottleSpec,
)
from scrape_gate.scheduler.orchestrator import (
    InvocationPhase,
    RunOrchestrator,
    RunStatus,
    classify_run,
    inspect_schedule,
    run_configured_invocation,
)
from scrape_gate.store.lease import FileLease
from scrape_gate.store.state import RunStateStore
from scrape_gate.testing.time_control import MonotonicClock, SleepRecorder, fixed_now

SYDNEY = ZoneInfo("Australia/Sydney")
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=SYDNEY)
OFF_PEAK = ScheduleWindow("off-peak", time(8, 30), time(17, 30), 240)

CONFIG_TOML = """default_interval_minutes = 60

[app]
timezone = "Australia/Sydney"

[[schedule_windows]]
name = "off-peak"
start_time = "08:30"
end_time = "17:30"
interval_minutes = 240

[throttle]
min_delay_seconds = 0
max_delay_seconds = 0
"""


class FakeCollaborator:
    """Lazy step source; exceptions in ``steps`` are raised when reached."""

    def __init__(self, steps: list[StepResult | BaseException]) -> None:
        self.steps = steps
        self.calls = 0
        self.produced = 0
        self.closed = False

    def perform_run(self):
        self.calls += 1
        try:
            for step in self.steps:
                if isinstance(step, BaseException):
                    raise step
                self.produced += 1
                yield step
        finally:
            self.closed = True


class SpyStore(RunStateStore):
    def __init__(self, path: Path, *, save_error: StateWriteError | None = None) -> None:
        super().__init__(path)
        self.loads = 0
        self.save_error = save_error

    def load(self) -> RunState:
        self.loads += 1
        return super().load()

    def save(self, state: RunState) -> None:
        if self.save_error is not None:
            raise self.save_error
        super().save(state)


def _step(name: str, outcome: StepOutcome = StepOutcome.SUCCESS) -> StepResult:
    return StepResult(name=name, outcome=outcome, detail=outcome.value, status_code=200)


def _config(*, throttle: ThrottleSpec | None = None) -> RuntimeConfig:
    return RuntimeConfig(
        schedule=ScheduleConfig(windows=(OFF_PEAK,), default_interval_minutes=60),
        throttle=throttle or ThrottleSpec(2.0, 6.0),
        app=AppConfig(timezone="Australia/Sydney"),
    )


def _orchestrator(
    tmp_path: Path,
    collaborator: FakeCollaborator,
    *,
    now: datetime = NOW,
    config: RuntimeConfig | None = None,
    store: RunStateStore | None = None,
    deadline_seconds: float | None = None,
    event_logger: JsonlEventLogger | None = None,
    lease: FileLease | None = None,
) -> tuple[RunOrchestrator, SleepRecorder]:
    clock = MonotonicClock()
    sleeps = SleepRecorder(clock=clock)
    orchestrator = RunOrchestrator(
        config or _config(),
        collaborator,
        state_store=store or RunStateStore(tmp_path / "run_state.json"),
        lease=lease or FileLease(tmp_path / "run.lease", stale_after_seconds=1800, holder_id="test-holder"),
        now_fn=fixed_now(now),
        sleep_fn=sleeps,
        monotonic_fn=clock,
        rng=random.Random(3),
        deadline_seconds=deadline_seconds,
        event_logger=event_logger,
        run_id="run-test",
    )
    return orchestrator, sleeps


def test_blocked_first_step_still_records_run(tmp_path: Path) -> None:
    collaborator = FakeCollaborator(
        [_step("https://a/1", StepOutcome.BLOCKED), _step("https://a/2")]
    )
    orchestrator, sleeps = _orchestrator(tmp_path, collaborator)

    result = orchestrator.invoke()

    assert result.status is RunStatus.RAN_WITH_FAILURE
    assert result.run.outcome is RunOutcome.BLOCKED
    assert collaborator.produced == 1
    assert collaborator.closed is True
    assert sleeps.calls == []

    state = RunStateStore(tmp_path / "run_state.json").load()
    assert state.last_run_timestamp == NOW
    assert state.last_outcome is RunOutcome.BLOCKED
    assert state.last_window_name == "off-peak"
    assert state.step_counts["blocked"] == 1
    assert not (tmp_path / "run.lease").exists()
    assert orchestrator.phase is InvocationPhase.IDLE


def test_missing_state_permits_regardless_of_window(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="scrape_gate")
    first, _ = _orchestrator(tmp_path, FakeCollaborator([_step("https://a/1")]))
    assert first.invoke().status is RunStatus.RAN_SUCCESSFULLY

    (tmp_path / "run_state.json").unlink()
    caplog.clear()
    collaborator = FakeCollaborator([_step("https://a/1")])
    second, _ = _orchestrator(tmp_path, collaborator, now=NOW + timedelta(minutes=1))

    result = second.invoke()

    assert result.status is RunStatus.RAN_SUCCESSFULLY
    assert collaborator.calls == 1
    assert "no prior run" in caplog.text


def test_failed_run_consumes_the_interval(tmp_path: Path) -> None:
    failing = FakeCollaborator([_step("https://a/1", StepOutcome.FAILED)])
    first, _ = _orchestrator(tmp_path, failing)
    assert first.invoke().run.outcome is RunOutcome.FAILED

    collaborator = FakeCollaborator([_step("https://a/1")])
    second, _ = _orchestrator(tmp_path, collaborator, now=NOW + timedelta(minutes=1))
    result = second.invoke()

    assert result.status is RunStatus.SKIPPED
    assert result.skip_reason == "interval"
    assert result.window_name == "off-peak"
    assert result.elapsed_minutes == pytest.approx(1.0)
    assert result.wait_remaining_minutes == pytest.approx(239.0)
    assert collaborator.calls == 0
    assert not (tmp_path / "run.lease").exists()


def test_interval_skip_logs_window_and_wait(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="scrape_gate")
    RunStateStore(tmp_path / "run_state.json").save(RunState(last_run_timestamp=NOW - timedelta(seconds=18)))
    orchestrator, _ = _orchestrator(tmp_path, FakeCollaborator([]))

    result = orchestrator.invoke()

    assert result.status is RunStatus.SKIPPED
    assert result.wait_remaining_minutes == pytest.approx(239.7)
    assert "run skipped reason=interval window=off-peak" in caplog.text
    assert "wait_remaining_minutes=239.7" in caplog.text


def test_throttle_delay_precedes_each_step_after_the_first(tmp_path: Path) -> None:
    collaborator = FakeCollaborator([_step("https://a/1"), _step("https://a/2"), _step("https://a/3")])
    orchestrator, sleeps = _orchestrator(tmp_path, collaborator)

    result = orchestrator.invoke()

    assert result.status is RunStatus.RAN_SUCCESSFULLY
    assert result.run.outcome is RunOutcome.SUCCESS
    assert result.run.step_counts == {"success": 3, "partial": 0, "failed": 0, "blocked": 0}
    # One delay per step boundary plus one before the exhausted fourth pull.
    assert len(sleeps.calls) == 3
    assert all(2.0 <= delay <= 6.0 for delay in sleeps.calls)
    assert len(set(sleeps.calls)) > 1


def test_mixed_steps_are_partial_success(tmp_path: Path) -> None:
    collaborator = FakeCollaborator([_step("https://a/1"), _step("https://a/2", StepOutcome.FAILED)])
    orchestrator, _ = _orchestrator(tmp_path, collaborator)

    result = orchestrator.invoke()

    assert result.status is RunStatus.RAN_SUCCESSFULLY
    assert result.run.outcome is RunOutcome.PARTIAL


def test_empty_run_is_success_without_delays(tmp_path: Path) -> None:
    orchestrator, sleeps = _orchestrator(tmp_path, FakeCollaborator([]))

    result = orchestrator.invoke()

    assert result.run.outcome is RunOutcome.SUCCESS
    assert sleeps.calls == []
    assert RunStateStore(tmp_path / "run_state.json").load().last_outcome is RunOutcome.SUCCESS


def test_collaborator_exception_is_a_failed_run(tmp_path: Path) -> None:
    collaborator = FakeCollaborator([RuntimeError("browser crashed")])
    orchestrator, _ = _orchestrator(tmp_path, collaborator)

    result = orchestrator.invoke()

    assert result.status is RunStatus.RAN_WITH_FAILURE
    assert result.run.outcome is RunOutcome.FAILED
    assert result.run.error == "browser crashed"
    assert RunStateStore(tmp_path / "run_state.json").load().last_outcome is RunOutcome.FAILED


def test_blocked_signal_raised_by_collaborator_stops_run(tmp_path: Path) -> None:
    collaborator = FakeCollaborator([_step("https://a/1"), BlockedError("captcha wall"), _step("https://a/3")])
    orchestrator, _ = _orchestrator(tmp_path, collaborator)

    result = orchestrator.invoke()

    assert result.status is RunStatus.RAN_WITH_FAILURE
    assert result.run.outcome is RunOutcome.BLOCKED
    assert result.run.error == "captcha wall"
    assert collaborator.produced == 1


def test_deadline_abandons_run_and_finalizes(tmp_path: Path) -> None:
    collaborator = FakeCollaborator([_step("https://a/1"), _step("https://a/2"), _step("https://a/3")])
    orchestrator, sleeps = _orchestrator(
        tmp_path,
        collaborator,
        config=_config(throttle=ThrottleSpec(4.0, 4.0)),
        deadline_seconds=5,
    )

    result = orchestrator.invoke()

    assert result.status is RunStatus.RAN_WITH_FAILURE
    assert result.run.outcome is RunOutcome.ABANDONED
    assert result.run.error == "deadline_exceeded"
    assert collaborator.produced == 2
    assert collaborator.closed is True
    assert sleeps.calls == [4.0, 1.0]
    assert RunStateStore(tmp_path / "run_state.json").load().last_outcome is RunOutcome.ABANDONED


def test_interrupt_finalizes_then_propagates(tmp_path: Path) -> None:
    collaborator = FakeCollaborator([_step("https://a/1"), KeyboardInterrupt()])
    orchestrator, _ = _orchestrator(tmp_path, collaborator)

    with pytest.raises(KeyboardInterrupt):
        orchestrator.invoke()

    state = RunStateStore(tmp_path / "run_state.json").load()
    assert state.last_outcome is RunOutcome.ABANDONED
    assert state.step_counts["success"] == 1
    assert not (tmp_path / "run.lease").exists()


def test_held_lease_skips_without_reading_state(tmp_path: Path) -> None:
    other = FileLease(tmp_path / "run.lease", stale_after_seconds=1800, holder_id="other-holder")
    other.acquire()
    store = SpyStore(tmp_path / "run_state.json")
    collaborator = FakeCollaborator([_step("https://a/1")])
    orchestrator, _ = _orchestrator(tmp_path, collaborator, store=store)

    result = orchestrator.invoke()

    assert result.status is RunStatus.SKIPPED
    assert result.skip_reason == "lease_held"
    assert result.lease_holder["holder_id"] == "other-holder"
    assert store.loads == 0
    assert collaborator.calls == 0
    assert other.current_holder().holder_id == "other-holder"


def test_stale_lease_is_reclaimed_and_run_proceeds(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="scrape_gate")
    abandoned_at = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
    (tmp_path / "run.lease").write_text(
        json.dumps({"holder_id": "crashed-holder", "acquired_at": abandoned_at, "heartbeat_at": abandoned_at}),
        encoding="utf-8",
    )
    collaborator = FakeCollaborator([_step("https://a/1")])
    orchestrator, _ = _orchestrator(tmp_path, collaborator)

    result = orchestrator.invoke()

    assert result.status is RunStatus.RAN_SUCCESSFULLY
    assert collaborator.calls == 1
    assert RunStateStore(tmp_path / "run_state.json").load().run_id == "run-test"
    assert not (tmp_path / "run.lease").exists()
    assert "stale lease reclaimed" in caplog.text
    assert "previous_holder=crashed-holder" in caplog.text


def test_unavailable_lease_directory_skips_without_touching_state(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    store = SpyStore(tmp_path / "run_state.json")
    collaborator = FakeCollaborator([_step("https://a/1")])
    orchestrator, _ = _orchestrator(
        tmp_path,
        collaborator,
        store=store,
        lease=FileLease(blocker / "run.lease", stale_after_seconds=1800, holder_id="test-holder"),
    )

    result = orchestrator.invoke()

    assert result.status is RunStatus.SKIPPED
    assert result.skip_reason == "lease_unavailable"
    assert result.elapsed_minutes is None
    assert "Could not create run lease directory" in result.error
    assert store.loads == 0
    assert collaborator.calls == 0
    assert not (tmp_path / "run_state.json").exists()
    assert orchestrator.phase is InvocationPhase.IDLE


@pytest.mark.parametrize(
    "raw",
    [
        b'{"lastRunTimestamp": "\xff\xfe"}',
        b'{"lastRunTimestamp": "0001-01-01T00:00:00+05:00"}',
    ],
)
def test_undecodable_state_counts_as_no_prior_run(tmp_path: Path, raw: bytes) -> None:
    (tmp_path / "run_state.json").write_bytes(raw)
    collaborator = FakeCollaborator([_step("https://a/1")])
    orchestrator, _ = _orchestrator(tmp_path, collaborator)

    result = orchestrator.invoke()

    assert result.status is RunStatus.RAN_SUCCESSFULLY
    assert result.previous_run_at is None
    assert RunStateStore(tmp_path / "run_state.json").load().last_run_timestamp == NOW


def test_state_write_failure_is_reported_separately(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="scrape_gate")
    store = SpyStore(tmp_path / "run_state.json", save_error=StateWriteError("disk full"))
    orchestrator, _ = _orchestrator(tmp_path, FakeCollaborator([_step("https://a/1")]), store=store)

    result = orchestrator.invoke()

    assert result.status is RunStatus.RAN_SUCCESSFULLY
    assert result.run.state_written is False
    assert result.run.state_error == "disk full"
    assert "state write failed" in caplog.text
    assert not (tmp_path / "run.lease").exists()


def test_future_state_timestamp_is_treated_as_missing(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="scrape_gate")
    RunStateStore(tmp_path / "run_state.json").save(RunState(last_run_timestamp=NOW + timedelta(days=1)))
    collaborator = FakeCollaborator([_step("https://a/1")])
    orchestrator, _ = _orchestrator(tmp_path, collaborator)

    result = orchestrator.invoke()

    assert result.status is RunStatus.RAN_SUCCESSFULLY
    assert collaborator.calls == 1
    assert "in the future" in caplog.text
    assert RunStateStore(tmp_path / "run_state.json").load().last_run_timestamp == NOW


def test_small_future_skew_still_gates(tmp_path: Path) -> None:
    RunStateStore(tmp_path / "run_state.json").save(RunState(last_run_timestamp=NOW + timedelta(seconds=30)))
    orchestrator, _ = _orchestrator(tmp_path, FakeCollaborator([_step("https://a/1")]))

    assert orchestrator.invoke().status is RunStatus.SKIPPED


def test_events_are_appended_for_run_and_skip(tmp_path: Path) -> None:
    events_path = tmp_path / "events.jsonl"
    collaborator = FakeCollaborator([_step("https://a/1"), _step("https://a/2", StepOutcome.PARTIAL)])
    first, _ = _orchestrator(tmp_path, collaborator, event_logger=JsonlEventLogger(events_path))
    first.invoke()
    second, _ = _orchestrator(
        tmp_path,
        FakeCollaborator([]),
        now=NOW + timedelta(minutes=5),
        event_logger=JsonlEventLogger(events_path),
    )
    second.invoke()

    events = [json.loads(line) for line in events_path.read_text(encoding="utf-8").splitlines()]
    assert [event["event_type"] for event in events] == [
        "run_started",
        "run_step",
        "run_step",
        "run_finished",
        "invocation_skipped",
    ]
    assert events[0]["window"] == "off-peak"
    assert events[2]["payload"]["outcome"] == "partial"
    assert events[3]["payload"]["outcome"] == "partial"
    assert events[3]["payload"]["state_written"] is True
    assert events[4]["payload"]["reason"] == "interval"


@pytest.mark.parametrize(
    ("counts", "expected"),
    [
        ({}, RunOutcome.SUCCESS),
        ({"success": 2}, RunOutcome.SUCCESS),
        ({"success": 1, "failed": 1}, RunOutcome.PARTIAL),
        ({"partial": 1, "failed": 2}, RunOutcome.PARTIAL),
        ({"failed": 2}, RunOutcome.FAILED),
        ({"success": 3, "blocked": 1}, RunOutcome.BLOCKED),
    ],
)
def test_classify_run(counts: dict[str, int], expected: RunOutcome) -> None:
    assert classify_run(counts) is expected


def test_run_configured_invocation_reports_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("default_interval_minutes = 0\n", encoding="utf-8")

    result = run_configured_invocation(config_path, collaborator=FakeCollaborator([]))

    assert result.status is RunStatus.CONFIG_ERROR
    assert "default_interval_minutes" in result.error
    assert not (tmp_path / "state").exists()


def test_run_configured_invocation_requires_fetch_targets(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(CONFIG_TOML, encoding="utf-8")

    result = run_configured_invocation(config_path)

    assert result.status is RunStatus.CONFIG_ERROR
    assert "No fetch targets" in result.error


def test_run_configured_invocation_runs_then_skips(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(CONFIG_TOML, encoding="utf-8")
    sleeps = SleepRecorder()

    first = run_configured_invocation(
        config_path,
        collaborator=FakeCollaborator([_step("https://a/1"), _step("https://a/2")]),
        now_fn=fixed_now(NOW),
        sleep_fn=sleeps,
        run_id="run-1",
    )
    second = run_configured_invocation(
        config_path,
        collaborator=FakeCollaborator([_step("https://a/1")]),
        now_fn=fixed_now(NOW + timedelta(minutes=30)),
        sleep_fn=sleeps,
        run_id="run-2",
    )

    assert first.status is RunStatus.RAN_SUCCESSFULLY
    assert first.run_id == "run-1"
    assert sleeps.calls == [0.0, 0.0]
    assert second.status is RunStatus.SKIPPED
    state = RunStateStore(tmp_path / "state" / "run_state.json").load()
    assert state.run_id == "run-1"
    assert not (tmp_path / "state" / "run.lease").exists()


def test_inspect_schedule_reports_next_eligible_time(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(CONFIG_TOML, encoding="utf-8")
    config = load_runtime_config(config_path)
    (tmp_path / "state").mkdir()
    RunStateStore(tmp_path / "state" / "run_state.json").save(
        RunState(last_run_timestamp=NOW - timedelta(minutes=30), last_outcome=RunOutcome.SUCCESS)
    )

    status = inspect_schedule(config, config_path=config_path, now_fn=fixed_now(NOW))

    assert status.window_name == "off-peak"
    assert status.effective_interval_minutes == 240
    assert status.would_run is False
    assert status.next_eligible_at == NOW + timedelta(minutes=210)
    assert status.next_eligible_at.tzinfo is not None
    assert status.lease_holder is None
    assert status.now.astimezone(timezone.utc) == NOW.astimezone(timezone.utc)


def test_inspect_schedule_without_state(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(CONFIG_TOML, encoding="utf-8")
    config = load_runtime_config(config_path)

    status = inspect_schedule(
        config,
        config_path=config_path,
        now_fn=fixed_now(datetime(2026, 3, 2, 22, 0, tzinfo=SYDNEY)),
    )

    assert status.window_name is None
    assert status.effective_interval_minutes == 60
    assert status.would_run is True
    assert status.last_run is None
    assert "No run state recorded" in status.state_error


def test_inspect_schedule_ignores_far_future_state_like_a_run_would(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(CONFIG_TOML, encoding="utf-8")
    config = load_runtime_config(config_path)
    (tmp_path / "state").mkdir()
    RunStateStore(tmp_path / "state" / "run_state.json").save(
        RunState(last_run_timestamp=NOW + timedelta(days=1), last_outcome=RunOutcome.SUCCESS)
    )

    status = inspect_schedule(config, config_path=config_path, now_fn=fixed_now(NOW))
    result = run_configured_invocation(
        config_path,
        collaborator=FakeCollaborator([_step("https://a/1")]),
        now_fn=fixed_now(NOW),
        sleep_fn=SleepRecorder(),
    )

    assert status.would_run is True
    assert status.last_run is None
    assert status.next_eligible_at is None
    assert "in the future" in status.state_error
    assert result.status is RunStatus.RAN_SUCCESSFULLY
