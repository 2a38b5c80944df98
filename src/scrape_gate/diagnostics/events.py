"""JSONL run event log.

Every line is one event for one invocation. The event type decides which
payload keys must be present, so a consumer tailing the log can rely on
``reason`` for skips and ``outcome``/``step_counts`` for finished runs
without probing. Fields are append-only within ``EVENT_SCHEMA_VERSION``'s
major version.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
import json
from pathlib import Path
from typing import Any

from scrape_gate.errors import DiagnosticsError
from scrape_gate.models import RunOutcome, StepOutcome

EVENT_SCHEMA_VERSION = "v1"

SKIP_REASONS = ("interval", "lease_held", "lease_unavailable")


class EventType(str, Enum):
    INVOCATION_SKIPPED = "invocation_skipped"
    RUN_STARTED = "run_started"
    RUN_STEP = "run_step"
    RUN_FINISHED = "run_finished"
    STATE_WRITE_FAILED = "state_write_failed"


REQUIRED_PAYLOAD_KEYS: dict[EventType, tuple[str, ...]] = {
    EventType.INVOCATION_SKIPPED: ("reason",),
    EventType.RUN_STARTED: ("interval_minutes",),
    EventType.RUN_STEP: ("index", "name", "outcome"),
    EventType.RUN_FINISHED: ("outcome", "duration_seconds", "step_counts", "state_written"),
    EventType.STATE_WRITE_FAILED: ("error",),
}


@dataclass(frozen=True)
class RunEvent:
    schema_version: str
    event_type: str
    occurred_at: str
    run_id: str
    window: str | None
    payload: dict[str, Any]


class JsonlEventLogger:
    """Append validated run events to a JSONL file, one object per line."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DiagnosticsError(f"Could not create event log directory for '{self._path}': {exc}.") from exc

    @property
    def path(self) -> Path:
        return self._path

    def append(
        self,
        event_type: EventType | str,
        *,
        run_id: str,
        window: str | None = None,
        payload: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> dict[str, Any]:
        event = build_event(event_type, run_id=run_id, window=window, payload=payload, occurred_at=occurred_at)
        try:
            with self._path.open("a", encoding="utf-8") as stream:
                stream.write(json.dumps(event, sort_keys=True) + "\n")
        except OSError as exc:
            raise DiagnosticsError(f"Could not append event to '{self._path}': {exc}.") from exc
        return event


def build_event(
    event_type: EventType | str,
    *,
    run_id: str,
    window: str | None = None,
    payload: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> dict[str, Any]:
    moment = occurred_at or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    event = RunEvent(
        schema_version=EVENT_SCHEMA_VERSION,
        event_type=_coerce_event_type(event_type).value,
        occurred_at=moment.isoformat(),
        run_id=run_id.strip(),
        window=window.strip() if isinstance(window, str) and window.strip() else None,
        payload=dict(payload or {}),
    )
    serialized = asdict(event)
    validate_event(serialized)
    return serialized


def validate_event(event: dict[str, Any]) -> None:
    """Check envelope fields, then the payload contract of the event type."""
    missing = [name for name in RunEvent.__dataclass_fields__ if name not in event]
    if missing:
        raise DiagnosticsError(f"Run event missing required field '{missing[0]}'.")

    ensure_schema_compatible(event["schema_version"])
    event_type = _coerce_event_type(event["event_type"])
    for name in ("occurred_at", "run_id"):
        value = event[name]
        if not isinstance(value, str) or not value.strip():
            raise DiagnosticsError(f"{name} must be a non-empty string.")
    if event["window"] is not None and not isinstance(event["window"], str):
        raise DiagnosticsError("window must be a string or null.")

    payload = event["payload"]
    if not isinstance(payload, dict):
        raise DiagnosticsError("payload must be an object.")
    for key in REQUIRED_PAYLOAD_KEYS[event_type]:
        if key not in payload:
            raise DiagnosticsError(f"{event_type.value} payload missing '{key}'.")

    if event_type is EventType.INVOCATION_SKIPPED and payload["reason"] not in SKIP_REASONS:
        raise DiagnosticsError(f"Unknown skip reason {payload['reason']!r}.")
    if event_type is EventType.RUN_STEP:
        _expect_member(StepOutcome, payload["outcome"], "run_step outcome")
    if event_type is EventType.RUN_FINISHED:
        _expect_member(RunOutcome, payload["outcome"], "run_finished outcome")
        counts = payload["step_counts"]
        if not isinstance(counts, dict) or any(
            not isinstance(value, int) or isinstance(value, bool) for value in counts.values()
        ):
            raise DiagnosticsError("run_finished step_counts must map outcomes to integers.")


def ensure_schema_compatible(schema_version: Any) -> None:
    """Accept any version sharing the current major (``v1``, ``v1.2``)."""
    if not isinstance(schema_version, str) or not schema_version.strip():
        raise DiagnosticsError("schema_version must be a non-empty string.")
    major = schema_version.strip().lower().removeprefix("v").split(".", 1)[0]
    if not major.isdigit():
        raise DiagnosticsError(f"Invalid schema version '{schema_version}'. Use forms like 'v1' or 'v1.1'.")
    current = EVENT_SCHEMA_VERSION.removeprefix("v")
    if major != current:
        raise DiagnosticsError(f"Incompatible run event schema '{schema_version}'. Expected major 'v{current}'.")


def _coerce_event_type(value: Any) -> EventType:
    try:
        return EventType(value)
    except ValueError as exc:
        known = ", ".join(member.value for member in EventType)
        raise DiagnosticsError(f"Unknown run event type {value!r}. Expected one of: {known}.") from exc


def _expect_member(enum_type: type[Enum], value: Any, label: str) -> None:
    try:
        enum_type(value)
    except ValueError as exc:
        raise DiagnosticsError(f"{label} {value!r} is not recognized.") from exc
