"""Structured event log helpers."""

from .events import (
    EVENT_SCHEMA_VERSION,
    REQUIRED_PAYLOAD_KEYS,
    SKIP_REASONS,
    EventType,
    JsonlEventLogger,
    build_event,
    ensure_schema_compatible,
    validate_event,
)

__all__ = [
    "EVENT_SCHEMA_VERSION",
    "REQUIRED_PAYLOAD_KEYS",
    "SKIP_REASONS",
    "EventType",
    "JsonlEventLogger",
    "build_event",
    "ensure_schema_compatible",
    "validate_event",
]
