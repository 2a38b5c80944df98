"""Logging setup helpers for scrape-gate."""

from __future__ import annotations

import logging

LOGGER_NAME = "scrape_gate"


def configure_logging(debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or LOGGER_NAME)


def enable_debug() -> None:
    """Lower the package logger to DEBUG without touching other handlers."""
    get_logger().setLevel(logging.DEBUG)
