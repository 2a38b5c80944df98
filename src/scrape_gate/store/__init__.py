"""Run state and lease storage."""

from .lease import FileLease, LeaseAcquisition, LeaseInfo
from .state import (
    RUN_STATE_SCHEMA_VERSION,
    RunStateStore,
    run_state_from_payload,
    run_state_to_payload,
)

__all__ = [
    "FileLease",
    "LeaseAcquisition",
    "LeaseInfo",
    "RUN_STATE_SCHEMA_VERSION",
    "RunStateStore",
    "run_state_from_payload",
    "run_state_to_payload",
]
