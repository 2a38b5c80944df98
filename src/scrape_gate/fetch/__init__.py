"""Fetch collaborator contracts."""

from .base import FetchCollaborator
from .pages import PlaywrightPageSequence, snapshot_slug
from .policy import (
    BLOCKED_STATUS_CODES,
    DEFAULT_BLOCKED_RESOURCE_TYPES,
    NavigationVerdict,
    ResourceRoutingPolicy,
    classify_navigation,
    detect_block_state,
    install_resource_routing,
    make_resource_route_handler,
)
from .session import PlaywrightBrowserSession

__all__ = [
    "BLOCKED_STATUS_CODES",
    "DEFAULT_BLOCKED_RESOURCE_TYPES",
    "FetchCollaborator",
    "NavigationVerdict",
    "PlaywrightBrowserSession",
    "PlaywrightPageSequence",
    "ResourceRoutingPolicy",
    "classify_navigation",
    "detect_block_state",
    "install_resource_routing",
    "make_resource_route_handler",
    "snapshot_slug",
]
