"""Error taxonomy for stable module boundaries."""


class ScrapeGateError(Exception):
    """Base exception for scrape-gate."""


class ConfigError(ScrapeGateError):
    """Raised when configuration is invalid or missing."""


class StateReadError(ScrapeGateError):
    """Raised when the persisted run state is missing, unreadable, or corrupt."""


class StateWriteError(ScrapeGateError):
    """Raised when the run state cannot be replaced atomically."""


class LeaseError(ScrapeGateError):
    """Raised for run lease lifecycle failures."""


class LeaseHeldError(LeaseError):
    """Raised when another invocation holds a live run lease."""

    def __init__(self, message: str, holder: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.holder = holder or {}


class FetchError(ScrapeGateError):
    """Raised for fetch collaborator and browser session failures."""


class BlockedError(FetchError):
    """Raised when the remote site's anti-automation defenses reject a request."""


class SchedulerError(ScrapeGateError):
    """Raised for window, gate, and throttle argument failures."""


class DiagnosticsError(ScrapeGateError):
    """Raised for event log path failures."""
