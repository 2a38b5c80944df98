"""scrape_gate: adaptive run scheduler and request throttle."""

from .config import (
    AppConfig,
    FetchConfig,
    LeaseConfig,
    RunConfig,
    RuntimeConfig,
    config_to_dict,
    default_config,
    init_default_config,
    load_runtime_config,
    resolve_config_path,
)
from .models import (
    RunOutcome,
    RunState,
    ScheduleConfig,
    ScheduleWindow,
    StepOutcome,
    StepResult,
    ThrottleSpec,
)

__all__ = [
    "AppConfig",
    "FetchConfig",
    "LeaseConfig",
    "RunConfig",
    "RunOutcome",
    "RunState",
    "RuntimeConfig",
    "ScheduleConfig",
    "ScheduleWindow",
    "StepOutcome",
    "StepResult",
    "ThrottleSpec",
    "config_to_dict",
    "default_config",
    "init_default_config",
    "load_runtime_config",
    "resolve_config_path",
]

__version__ = "0.1.0"
