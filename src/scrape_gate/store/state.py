"""Durable record of the most recent run, replaced atomically."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import os
from pathlib import Path
from typing import Any

from scrape_gate.errors import StateReadError, StateWriteError
from scrape_gate.models import RunOutcome, RunState

RUN_STATE_SCHEMA_VERSION = "v1"


class RunStateStore:
    """Read and replace the single run state record.

    The orchestrator is the only writer. Readers never see a torn record:
    writes go to a sibling temp file which is fsynced and then renamed over
    the live path.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> RunState:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise StateReadError(f"No run state recorded at '{self._path}'.") from exc
        except OSError as exc:
            raise StateReadError(f"Could not read run state '{self._path}': {exc}.") from exc
        except UnicodeDecodeError as exc:
            raise StateReadError(f"Run state '{self._path}' is not valid UTF-8: {exc}.") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateReadError(f"Run state '{self._path}' is not valid JSON: {exc}.") from exc
        return run_state_from_payload(data, source=str(self._path))

    def save(self, state: RunState) -> None:
        serialized = json.dumps(run_state_to_payload(state), indent=2, sort_keys=True)
        temp_path = self._path.with_name(f"{self._path.name}.{os.getpid()}.tmp")
        fd: int | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
            with os.fdopen(fd, "w", encoding="utf-8") as stream:
                fd = None
                stream.write(serialized)
                stream.write("\n")
                stream.flush()
                os.fsync(stream.fileno())
            os.replace(temp_path, self._path)
        except OSError as exc:
            raise StateWriteError(
                f"Could not persist run state at '{self._path}': {exc}. Previous state is unchanged."
            ) from exc
        finally:
            if fd is not None:
                os.close(fd)
            try:
                if temp_path.exists():
                    temp_path.unlink()
            except OSError:
                pass


def run_state_to_payload(state: RunState) -> dict[str, Any]:
    return {
        "schemaVersion": RUN_STATE_SCHEMA_VERSION,
        "lastRunTimestamp": _to_utc(state.last_run_timestamp).isoformat().replace("+00:00", "Z"),
        "lastWindowName": state.last_window_name,
        "lastOutcome": state.last_outcome.value if state.last_outcome is not None else None,
        "lastDurationSeconds": state.last_duration_seconds,
        "stepCounts": dict(state.step_counts),
        "runId": state.run_id,
    }


def run_state_from_payload(data: Any, *, source: str = "run state") -> RunState:
    if not isinstance(data, dict):
        raise StateReadError(f"Run state '{source}' has invalid structure: expected JSON object.")

    raw_timestamp = data.get("lastRunTimestamp")
    if not isinstance(raw_timestamp, str) or not raw_timestamp.strip():
        raise StateReadError(f"Run state '{source}' is missing 'lastRunTimestamp'.")
    try:
        timestamp = _to_utc(datetime.fromisoformat(raw_timestamp.strip().replace("Z", "+00:00")))
    except (OverflowError, ValueError) as exc:
        raise StateReadError(
            f"Run state '{source}' has invalid 'lastRunTimestamp' {raw_timestamp!r}."
        ) from exc

    window_name = data.get("lastWindowName")
    if window_name is not None and not isinstance(window_name, str):
        raise StateReadError(f"Run state '{source}' has invalid 'lastWindowName'.")

    # Observability fields are best-effort; a bad value never invalidates the timestamp.
    outcome: RunOutcome | None
    try:
        outcome = RunOutcome(data["lastOutcome"]) if data.get("lastOutcome") else None
    except ValueError:
        outcome = None
    duration = data.get("lastDurationSeconds")
    if isinstance(duration, bool) or not isinstance(duration, (int, float)):
        duration = None
    counts_raw = data.get("stepCounts")
    step_counts = (
        {str(key): value for key, value in counts_raw.items() if isinstance(value, int)}
        if isinstance(counts_raw, dict)
        else {}
    )
    run_id = data.get("runId") if isinstance(data.get("runId"), str) else None

    return RunState(
        last_run_timestamp=timestamp,
        last_window_name=window_name,
        last_outcome=outcome,
        last_duration_seconds=float(duration) if duration is not None else None,
        step_counts=step_counts,
        run_id=run_id,
    )


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
