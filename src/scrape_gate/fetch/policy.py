"""Navigation classification and resource-routing policies for page fetches."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlparse

from scrape_gate.models import StepOutcome

DEFAULT_BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font"})

# 403 is how Cloudflare fronts a block; 429 is explicit rate limiting.
BLOCKED_STATUS_CODES = frozenset({403, 429, 503})

_LOGIN_URL_PATHS = frozenset({"/login", "/signin", "/user/login"})
_CHALLENGE_URL_MARKERS = ("/cdn-cgi/challenge-platform", "/challenge", "/captcha")
_CHALLENGE_TITLE_MARKERS = (
    "just a moment",
    "attention required",
    "access denied",
    "too many requests",
    "verify you are human",
)
_CHALLENGE_BODY_MARKERS = (
    "checking your browser",
    "enable javascript and cookies to continue",
    "verify you are human",
    "unusual traffic",
    "too many requests",
    "rate limit exceeded",
    "you have been blocked",
)
_LOGIN_TITLE_MARKERS = ("sign in", "log in", "login")
_LOGIN_BODY_MARKERS = (
    "please log in",
    "you need to log in",
    "session expired",
    "your session has expired",
)


class RequestRoute(Protocol):
    def abort(self) -> Any:
        """Abort current request."""

    def continue_(self) -> Any:
        """Continue current request."""


class RequestLike(Protocol):
    @property
    def resource_type(self) -> str:
        """Request resource type."""


class RoutablePage(Protocol):
    def route(
        self,
        url: str,
        handler: Callable[[RequestRoute, RequestLike], Any],
    ) -> Any:
        """Register request-routing handler."""


@dataclass(frozen=True)
class ResourceRoutingPolicy:
    enabled: bool
    blocked_resource_types: frozenset[str]


@dataclass(frozen=True)
class NavigationVerdict:
    outcome: StepOutcome
    reason: str


def install_resource_routing(
    page: RoutablePage,
    *,
    block_resources: bool,
    blocked_resource_types: Iterable[str] | None = None,
) -> ResourceRoutingPolicy:
    """Install request interception for configured blocked resource types."""
    if not block_resources:
        return ResourceRoutingPolicy(enabled=False, blocked_resource_types=frozenset())

    blocked = _normalize_resource_types(blocked_resource_types)
    if not blocked:
        return ResourceRoutingPolicy(enabled=False, blocked_resource_types=frozenset())

    handler = make_resource_route_handler(blocked)
    page.route("**/*", handler)
    return ResourceRoutingPolicy(enabled=True, blocked_resource_types=blocked)


def make_resource_route_handler(
    blocked_resource_types: Iterable[str],
) -> Callable[[RequestRoute, RequestLike], Any]:
    """Build a route handler that aborts blocked resource types."""
    blocked = _normalize_resource_types(blocked_resource_types)

    def _handler(route: RequestRoute, request: RequestLike) -> Any:
        resource_type = str(getattr(request, "resource_type", "")).strip().lower()
        if resource_type in blocked:
            return route.abort()
        return route.continue_()

    return _handler


def detect_block_state(current_url: str, page_title: str, body_text: str) -> str | None:
    """Return ``challenge`` or ``login_wall`` when the page is not real content."""
    lowered_title = str(page_title).lower()
    lowered_body = str(body_text).lower()
    url_path = urlparse(str(current_url).lower()).path

    if any(marker in url_path for marker in _CHALLENGE_URL_MARKERS) or any(
        marker in lowered_title for marker in _CHALLENGE_TITLE_MARKERS
    ) or any(marker in lowered_body for marker in _CHALLENGE_BODY_MARKERS):
        return "challenge"

    if url_path in _LOGIN_URL_PATHS or any(marker in lowered_title for marker in _LOGIN_TITLE_MARKERS):
        return "login_wall"
    if any(marker in lowered_body for marker in _LOGIN_BODY_MARKERS):
        return "login_wall"
    return None


def classify_navigation(
    *,
    status_code: int | None,
    current_url: str,
    page_title: str,
    body_text: str,
) -> NavigationVerdict:
    """Classify one page load as success, partial, failed, or blocked."""
    if status_code in BLOCKED_STATUS_CODES:
        return NavigationVerdict(StepOutcome.BLOCKED, f"http_{status_code}")

    block_state = detect_block_state(current_url, page_title, body_text)
    if block_state == "challenge":
        return NavigationVerdict(StepOutcome.BLOCKED, "challenge_page")
    if block_state == "login_wall":
        return NavigationVerdict(StepOutcome.FAILED, "login_wall")

    if status_code is not None and status_code >= 400:
        return NavigationVerdict(StepOutcome.FAILED, f"http_{status_code}")
    if not body_text.strip():
        return NavigationVerdict(StepOutcome.PARTIAL, "empty_body")
    return NavigationVerdict(StepOutcome.SUCCESS, "ok")


def _normalize_resource_types(resource_types: Iterable[str] | None) -> frozenset[str]:
    source = DEFAULT_BLOCKED_RESOURCE_TYPES if resource_types is None else resource_types
    normalized = {
        str(resource_type).strip().lower()
        for resource_type in source
        if str(resource_type).strip()
    }
    return frozenset(normalized)
