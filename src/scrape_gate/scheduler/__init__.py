"""Window resolution, run gating, throttling and orchestration."""

from .gate import Deny, GateDecision, Permit, decide, next_eligible_at
from .orchestrator import (
    InvocationPhase,
    InvocationResult,
    RunOrchestrator,
    RunReport,
    RunStatus,
    ScheduleStatus,
    classify_run,
    format_step_counts,
    inspect_schedule,
    load_previous_state,
    run_configured_invocation,
)
from .throttle import Throttle
from .windows import WindowResolution, resolve_window, window_contains

__all__ = [
    "Deny",
    "GateDecision",
    "InvocationPhase",
    "InvocationResult",
    "Permit",
    "RunOrchestrator",
    "RunReport",
    "RunStatus",
    "ScheduleStatus",
    "Throttle",
    "WindowResolution",
    "classify_run",
    "decide",
    "format_step_counts",
    "inspect_schedule",
    "load_previous_state",
    "next_eligible_at",
    "resolve_window",
    "run_configured_invocation",
    "window_contains",
]
