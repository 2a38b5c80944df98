"""Jittered inter-step delays for a permitted run."""

from __future__ import annotations

import random

from scrape_gate.errors import SchedulerError
from scrape_gate.models import ThrottleSpec


class Throttle:
    """Draw delays uniformly from ``[min_delay_seconds, max_delay_seconds]``.

    A fixed request cadence is easy for anti-automation heuristics to key on,
    so every boundary gets a fresh draw. Construct one per run.
    """

    def __init__(self, spec: ThrottleSpec, *, rng: random.Random | None = None) -> None:
        if spec.min_delay_seconds < 0:
            raise SchedulerError("min_delay_seconds must be >= 0.")
        if spec.max_delay_seconds < spec.min_delay_seconds:
            raise SchedulerError("max_delay_seconds must be >= min_delay_seconds.")
        self.spec = spec
        self._rng = rng if rng is not None else random.Random()
        self.issued: list[float] = []

    def next_delay(self) -> float:
        delay = self._rng.uniform(self.spec.min_delay_seconds, self.spec.max_delay_seconds)
        # uniform() may round past the upper bound for float endpoints.
        delay = min(max(delay, self.spec.min_delay_seconds), self.spec.max_delay_seconds)
        self.issued.append(delay)
        return delay
