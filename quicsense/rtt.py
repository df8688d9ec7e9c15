"""Round-trip time estimation in clock ticks."""

from __future__ import annotations

import logging
from dataclasses import dataclass

log = logging.getLogger("quicsense.rtt")


@dataclass
class RttEstimator:
    """Smoothed RTT, variance, minimum and latest sample, all in ticks."""

    smoothed: int = 0
    variance: int = 0
    minimum: int = 0
    latest: int = 0

    def update(self, sample: int) -> None:
        """Fold a new RTT sample into the estimate."""
        if sample < 0:
            raise ValueError("RTT sample must not be negative")
        if self.minimum == 0 or sample < self.minimum:
            self.minimum = sample
        self.latest = sample
        if self.smoothed == 0:
            self.smoothed = sample
            self.variance = sample // 2
        else:
            delta = abs(self.smoothed - sample)
            self.variance = (3 * self.variance + delta) // 4
            self.smoothed = (7 * self.smoothed + sample) // 8
        log.debug(
            "RTT Update: latest=%d, smoothed=%d, min=%d",
            self.latest,
            self.smoothed,
            self.minimum,
        )