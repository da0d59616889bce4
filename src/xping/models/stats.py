"""
Ping statistics.

Cumulative counters for one run of the probe loop.
"""

import math
from dataclasses import dataclass


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positive values."""
    return int(math.floor(value + 0.5))


@dataclass
class PingStatistics:
    """Counters updated once per completed probe."""
    attempted: int = 0
    succeeded: int = 0
    total_ms: int = 0
    min_ms: float = math.inf
    max_ms: int = 0

    def record_success(self, latency_ms: int) -> None:
        """Record a probe that got a response."""
        self.attempted += 1
        self.succeeded += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)

    def record_failure(self) -> None:
        """Record a probe that failed."""
        self.attempted += 1

    @property
    def lost(self) -> int:
        return self.attempted - self.succeeded

    @property
    def loss_percent(self) -> int:
        """Rounded loss percentage, 0 when nothing was attempted."""
        if self.attempted == 0:
            return 0
        return round_half_up(self.lost / self.attempted * 100)

    @property
    def average_ms(self) -> int:
        """Rounded mean latency of successful probes, 0 when none succeeded."""
        if self.succeeded == 0:
            return 0
        return round_half_up(self.total_ms / self.succeeded)
