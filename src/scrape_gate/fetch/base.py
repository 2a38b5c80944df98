"""Fetch collaborator interface."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Protocol

from scrape_gate.models import StepResult


class FetchCollaborator(Protocol):
    def perform_run(self) -> Iterator[StepResult]:
        """Yield classified sub-step results lazily; finite and not restartable."""
