"""Shared configuration contracts and validation helpers for scrape-gate."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import time
import json
import os
from pathlib import Path
import re
import tomllib
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from platformdirs import user_config_dir

from .errors import ConfigError
from .models import ScheduleConfig, ScheduleWindow, ThrottleSpec

VALID_BROWSER_ENGINES = {"chromium", "firefox", "webkit"}
DEFAULT_CONFIG_FILENAME = "config.toml"
CONFIG_ENV_VAR = "SCRAPE_GATE_CONFIG"
STATE_FILENAME = "run_state.json"
LEASE_FILENAME = "run.lease"

_TIME_OF_DAY_RE = re.compile(r"^(?P<hour>\d{2}):(?P<minute>\d{2})$")
_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

DEFAULT_CONFIG_TEMPLATE = """# Minutes between runs when no schedule window matches.
default_interval_minutes = 10

[app]
timezone = "Australia/Sydney"
debug = false

# Windows are matched in order; the first window containing the current
# local time wins. end_time earlier than start_time crosses midnight.
[[schedule_windows]]
name = "morning-peak"
start_time = "05:00"
end_time = "09:00"
interval_minutes = 2

[[schedule_windows]]
name = "daytime"
start_time = "09:00"
end_time = "17:00"
interval_minutes = 5

[[schedule_windows]]
name = "evening-peak"
start_time = "17:00"
end_time = "21:00"
interval_minutes = 2

[throttle]
min_delay_seconds = 2.0
max_delay_seconds = 6.0

[lease]
stale_after_seconds = 1800

[run]
deadline_seconds = 0
max_future_skew_seconds = 300

[fetch]
base_url = "https://club.example.org"
paths = ["/bookings"]
engine = "chromium"
headless = true
navigation_timeout_ms = 30000
block_resources = true
locale = "en-AU"
"""


@dataclass(frozen=True)
class AppConfig:
    timezone: str = "UTC"
    state_dir: str | None = None
    events_path: str | None = None
    debug: bool = False


@dataclass(frozen=True)
class LeaseConfig:
    stale_after_seconds: int = 1800


@dataclass(frozen=True)
class RunConfig:
    deadline_seconds: int = 0
    max_future_skew_seconds: int = 300


@dataclass(frozen=True)
class FetchConfig:
    base_url: str | None = None
    paths: tuple[str, ...] = ()
    engine: str = "chromium"
    headless: bool = True
    navigation_timeout_ms: int = 30_000
    action_timeout_ms: int = 10_000
    block_resources: bool = True
    viewport_width: int = 1280
    viewport_height: int = 720
    locale: str = "en-AU"
    snapshot_dir: str | None = None

    @property
    def urls(self) -> tuple[str, ...]:
        if not self.base_url:
            return ()
        base = self.base_url.rstrip("/")
        return tuple(f"{base}/{path.lstrip('/')}" for path in self.paths)


@dataclass(frozen=True)
class RuntimeConfig:
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    throttle: ThrottleSpec = field(default_factory=ThrottleSpec)
    app: AppConfig = field(default_factory=AppConfig)
    lease: LeaseConfig = field(default_factory=LeaseConfig)
    run: RunConfig = field(default_factory=RunConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)


def default_config() -> RuntimeConfig:
    return RuntimeConfig()


def default_config_toml() -> str:
    return DEFAULT_CONFIG_TEMPLATE


def resolve_config_path(config_path: str | Path | None = None) -> Path:
    if config_path:
        return Path(config_path).expanduser()

    env_value = os.getenv(CONFIG_ENV_VAR)
    if env_value:
        return Path(env_value).expanduser()

    config_dir = Path(user_config_dir("scrape-gate", appauthor=False))
    return config_dir / DEFAULT_CONFIG_FILENAME


def resolve_state_dir(config: RuntimeConfig, config_path: str | Path | None = None) -> Path:
    """Return the directory holding the run state record and the run lease."""
    if config.app.state_dir:
        return Path(config.app.state_dir).expanduser()
    return resolve_config_path(config_path).parent / "state"


def resolve_events_path(config: RuntimeConfig, config_path: str | Path | None = None) -> Path | None:
    if not config.app.events_path:
        return None
    events_path = Path(config.app.events_path).expanduser()
    if events_path.is_absolute():
        return events_path
    return resolve_config_path(config_path).parent / events_path


def init_default_config(config_path: str | Path | None = None, force: bool = False) -> Path:
    path = resolve_config_path(config_path)
    if path.exists() and path.is_dir():
        raise ConfigError(
            f"Config path '{path}' is a directory; expected a TOML file path (for example '{path / DEFAULT_CONFIG_FILENAME}')."
        )
    if path.exists() and not force:
        raise ConfigError(
            f"Config file already exists at '{path}'. Re-run with --force to overwrite."
        )

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(default_config_toml(), encoding="utf-8")
    except OSError as exc:
        raise ConfigError(
            f"Could not write config file at '{path}': {exc}. "
            "Check path permissions or choose a writable location with `--path`."
        ) from exc
    return path


def load_runtime_config(config_path: str | Path | None = None) -> RuntimeConfig:
    path = resolve_config_path(config_path)
    if not path.exists():
        raise ConfigError(
            f"Config file not found at '{path}'. Run `scrape-gate config init --path \"{path}\"` to generate defaults."
        )
    if path.is_dir():
        raise ConfigError(
            f"Config path '{path}' is a directory; pass a file path ending in '{DEFAULT_CONFIG_FILENAME}'."
        )

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(
            f"Could not read config file '{path}': {exc}. "
            "Check file permissions and that the path points to a readable config file."
        ) from exc
    except UnicodeDecodeError as exc:
        raise ConfigError(f"Config file '{path}' is not valid UTF-8: {exc}.") from exc
    if path.suffix.lower() == ".json":
        raw = _normalize_keys(_load_json(text, path))
    else:
        raw = _load_toml(text, path)
    return parse_runtime_config(raw)


def config_to_dict(config: RuntimeConfig) -> dict[str, Any]:
    payload = asdict(config)
    for window in payload["schedule"]["windows"]:
        window["start_time"] = window["start_time"].strftime("%H:%M")
        window["end_time"] = window["end_time"].strftime("%H:%M")
    return payload


def _load_toml(text: str, path: Path) -> dict[str, Any]:
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(
            f"Config file '{path}' contains invalid TOML: {exc}. "
            "Fix the syntax or regenerate defaults with `scrape-gate config init --force`."
        ) from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config file '{path}' must parse to a TOML table.")
    return data


def _load_json(text: str, path: Path) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file '{path}' contains invalid JSON: {exc}.") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config file '{path}' must contain a JSON object.")
    return data


def _normalize_keys(value: Any) -> Any:
    # JSON documents use camelCase keys (scheduleWindows, intervalMinutes, ...).
    if isinstance(value, dict):
        return {_snake_case(str(key)): _normalize_keys(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_normalize_keys(item) for item in value]
    return value


def _snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY_RE.sub("_", key).lower()


def parse_runtime_config(data: dict[str, Any]) -> RuntimeConfig:
    """Validate a raw config mapping and build the immutable runtime config."""
    app_raw = _expect_table(data, "app", default={})
    throttle_raw = _expect_table(data, "throttle", default={})
    lease_raw = _expect_table(data, "lease", default={})
    run_raw = _expect_table(data, "run", default={})
    fetch_raw = _expect_table(data, "fetch", default={})

    app_config = AppConfig(
        timezone=_expect_timezone(app_raw, "app.timezone", default="UTC"),
        state_dir=_expect_optional_string(app_raw, "app.state_dir"),
        events_path=_expect_optional_string(app_raw, "app.events_path"),
        debug=_expect_bool(app_raw, "app.debug", default=False),
    )

    schedule = ScheduleConfig(
        windows=_parse_windows(data.get("schedule_windows", [])),
        default_interval_minutes=_expect_positive_int(
            data, "default_interval_minutes", default=None
        ),
    )

    min_delay = _expect_non_negative_number(throttle_raw, "throttle.min_delay_seconds", default=2.0)
    max_delay = _expect_non_negative_number(throttle_raw, "throttle.max_delay_seconds", default=6.0)
    if max_delay < min_delay:
        raise ConfigError(
            "Invalid [throttle]: max_delay_seconds must be greater than or equal to min_delay_seconds."
        )

    lease_config = LeaseConfig(
        stale_after_seconds=_expect_positive_int(lease_raw, "lease.stale_after_seconds", default=1800),
    )
    run_config = RunConfig(
        deadline_seconds=_expect_non_negative_int(run_raw, "run.deadline_seconds", default=0),
        max_future_skew_seconds=_expect_non_negative_int(
            run_raw, "run.max_future_skew_seconds", default=300
        ),
    )

    fetch_config = FetchConfig(
        base_url=_expect_optional_string(fetch_raw, "fetch.base_url"),
        paths=_expect_string_list(fetch_raw, "fetch.paths"),
        engine=_expect_choice(
            fetch_raw,
            "fetch.engine",
            default="chromium",
            valid_values=VALID_BROWSER_ENGINES,
        ),
        headless=_expect_bool(fetch_raw, "fetch.headless", default=True),
        navigation_timeout_ms=_expect_positive_int(
            fetch_raw, "fetch.navigation_timeout_ms", default=30_000
        ),
        action_timeout_ms=_expect_positive_int(fetch_raw, "fetch.action_timeout_ms", default=10_000),
        block_resources=_expect_bool(fetch_raw, "fetch.block_resources", default=True),
        viewport_width=_expect_positive_int(fetch_raw, "fetch.viewport_width", default=1280),
        viewport_height=_expect_positive_int(fetch_raw, "fetch.viewport_height", default=720),
        locale=_expect_non_empty_string(fetch_raw, "fetch.locale", "en-AU"),
        snapshot_dir=_expect_optional_string(fetch_raw, "fetch.snapshot_dir"),
    )

    return RuntimeConfig(
        schedule=schedule,
        throttle=ThrottleSpec(min_delay_seconds=min_delay, max_delay_seconds=max_delay),
        app=app_config,
        lease=lease_config,
        run=run_config,
        fetch=fetch_config,
    )


def _parse_windows(windows_raw: Any) -> tuple[ScheduleWindow, ...]:
    if not isinstance(windows_raw, list):
        raise ConfigError(
            "Invalid [schedule_windows]: expected an array of tables (`[[schedule_windows]]`)."
        )

    parsed: list[ScheduleWindow] = []
    seen_names: set[str] = set()
    for index, window in enumerate(windows_raw):
        if not isinstance(window, dict):
            raise ConfigError(
                f"schedule_windows[{index}] must be a table, got {type(window).__name__}."
            )
        prefix = f"schedule_windows[{index}]"
        name = _expect_non_empty_string(window, f"{prefix}.name", default=None)
        if name in seen_names:
            raise ConfigError(f"Duplicate schedule window name '{name}' at {prefix}.")
        seen_names.add(name)

        start_raw = _expect_non_empty_string(window, f"{prefix}.start_time", default=None)
        end_raw = _expect_non_empty_string(window, f"{prefix}.end_time", default=None)
        start = parse_time_of_day(start_raw, f"{prefix}.start_time")
        end = parse_time_of_day(end_raw, f"{prefix}.end_time")
        if start == end:
            raise ConfigError(
                f"Invalid {prefix}: start_time and end_time are both {start.strftime('%H:%M')}; "
                "a window must cover a non-empty part of the day."
            )
        parsed.append(
            ScheduleWindow(
                name=name,
                start_time=start,
                end_time=end,
                interval_minutes=_expect_positive_int(window, f"{prefix}.interval_minutes", default=None),
            )
        )
    return tuple(parsed)


def parse_time_of_day(raw: str, key: str = "time") -> time:
    """Parse a strict HH:MM 24-hour local time."""
    match = _TIME_OF_DAY_RE.fullmatch(raw.strip())
    if match is None:
        raise ConfigError(f"Invalid value for '{key}': '{raw}'. Expected format HH:MM (24-hour clock).")
    hour = int(match.group("hour"))
    minute = int(match.group("minute"))
    if hour > 23:
        raise ConfigError(f"Invalid value for '{key}': hour '{match.group('hour')}' must be between 00 and 23.")
    if minute > 59:
        raise ConfigError(
            f"Invalid value for '{key}': minute '{match.group('minute')}' must be between 00 and 59."
        )
    return time(hour=hour, minute=minute)


def _expect_table(data: dict[str, Any], key: str, default: dict[str, Any]) -> dict[str, Any]:
    value = data.get(key, default)
    if not isinstance(value, dict):
        raise ConfigError(f"Invalid [{key}] table: expected table, got {type(value).__name__}.")
    return value


def _expect_non_empty_string(
    data: dict[str, Any], key: str, default: str | None
) -> str:
    if key.split(".")[-1] in data:
        value = data[key.split(".")[-1]]
    else:
        if default is None:
            raise ConfigError(f"Missing required value '{key}'.")
        value = default

    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Invalid value for '{key}': expected non-empty string.")
    return value


def _expect_optional_string(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key.split(".")[-1])
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"Invalid value for '{key}': expected string.")
    return value.strip() or None


def _expect_string_list(data: dict[str, Any], key: str) -> tuple[str, ...]:
    value = data.get(key.split(".")[-1], [])
    if not isinstance(value, list) or not all(isinstance(item, str) and item.strip() for item in value):
        raise ConfigError(f"Invalid value for '{key}': expected an array of non-empty strings.")
    return tuple(item.strip() for item in value)


def _expect_positive_int(data: dict[str, Any], key: str, default: int | None) -> int:
    field_name = key.split(".")[-1]
    if field_name not in data and default is None:
        raise ConfigError(f"Missing required value '{key}'.")
    value = data.get(field_name, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"Invalid value for '{key}': expected positive integer.")
    return value


def _expect_non_negative_int(data: dict[str, Any], key: str, default: int) -> int:
    value = data.get(key.split(".")[-1], default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"Invalid value for '{key}': expected non-negative integer.")
    return value


def _expect_non_negative_number(data: dict[str, Any], key: str, default: float) -> float:
    value = data.get(key.split(".")[-1], default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(f"Invalid value for '{key}': expected non-negative number.")
    return float(value)


def _expect_bool(data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key.split(".")[-1], default)
    if not isinstance(value, bool):
        raise ConfigError(f"Invalid value for '{key}': expected boolean true/false.")
    return value


def _expect_choice(
    data: dict[str, Any],
    key: str,
    default: str | None,
    valid_values: set[str],
) -> str:
    field_name = key.split(".")[-1]
    if field_name in data:
        value = data[field_name]
    else:
        if default is None:
            raise ConfigError(f"Missing required value '{key}'.")
        value = default

    if not isinstance(value, str) or value not in valid_values:
        choices = ", ".join(sorted(valid_values))
        raise ConfigError(f"Invalid value for '{key}': expected one of [{choices}].")
    return value


def _expect_timezone(data: dict[str, Any], key: str, default: str) -> str:
    value = _expect_non_empty_string(data, key, default)
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(
            f"Invalid value for '{key}': '{value}'. Use an IANA timezone like 'UTC' or 'Australia/Sydney'."
        ) from exc
    return value
