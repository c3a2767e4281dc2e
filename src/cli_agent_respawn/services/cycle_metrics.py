"""Cycle history: adaptive completion timing and aggregate cycle metrics."""

import logging
import math
import statistics
from collections import deque
from typing import Deque, Iterable, Optional

from cli_agent_respawn.constants import (
    ADAPTIVE_CONFIRM_RATIO,
    ADAPTIVE_TIMING_MAX_SAMPLES,
    ADAPTIVE_TIMING_MIN_SAMPLES,
)
from cli_agent_respawn.models.config import RespawnConfig
from cli_agent_respawn.models.respawn import (
    AggregateMetrics,
    CycleMetrics,
    CycleOutcome,
    TimingHistoryStatus,
)
from cli_agent_respawn.utils.timers import Clock

logger = logging.getLogger(__name__)


class TimingHistory:
    """Rolling windows of how long the agent worked before idle, and how long cycles took.

    With ``adaptive_timing_enabled`` the idle confirmation window follows the
    median idle-detection time instead of the fixed ``completion_confirm_ms``.
    """

    def __init__(self, clock: Clock, max_samples: int = ADAPTIVE_TIMING_MAX_SAMPLES):
        self.clock = clock
        self.max_samples = max_samples
        self.idle_detection_seconds: Deque[float] = deque(maxlen=max_samples)
        self.cycle_duration_seconds: Deque[float] = deque(maxlen=max_samples)
        self.last_updated_at: Optional[float] = None

    @property
    def sample_count(self) -> int:
        return len(self.idle_detection_seconds)

    def record(self, idle_detection_seconds: float, cycle_duration_seconds: float) -> None:
        self.idle_detection_seconds.append(idle_detection_seconds)
        self.cycle_duration_seconds.append(cycle_duration_seconds)
        self.last_updated_at = self.clock.now()
        logger.debug(
            f"Timing sample: idle after {idle_detection_seconds:.1f}s, "
            f"cycle took {cycle_duration_seconds:.1f}s ({self.sample_count} samples)"
        )

    def completion_confirm_ms(self, config: RespawnConfig) -> int:
        """Confirmation window to arm for the next completion message."""
        if not config.adaptive_timing_enabled or self.sample_count < ADAPTIVE_TIMING_MIN_SAMPLES:
            return config.completion_confirm_ms
        derived = statistics.median(self.idle_detection_seconds) * 1000.0 * ADAPTIVE_CONFIRM_RATIO
        clamped = min(max(derived, config.adaptive_min_confirm_ms), config.adaptive_max_confirm_ms)
        return int(round(clamped))

    def status(self, config: RespawnConfig) -> TimingHistoryStatus:
        return TimingHistoryStatus(
            recent_idle_detection_seconds=list(self.idle_detection_seconds),
            recent_cycle_duration_seconds=list(self.cycle_duration_seconds),
            sample_count=self.sample_count,
            max_samples=self.max_samples,
            adaptive_completion_confirm_ms=self.completion_confirm_ms(config),
            last_updated_at=self.last_updated_at,
        )


def percentile(values, fraction: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty sequence."""
    ordered = sorted(values)
    if not ordered:
        return 0.0
    rank = max(1, math.ceil(fraction * len(ordered)))
    return ordered[rank - 1]


def aggregate_metrics(cycles: Iterable[CycleMetrics]) -> AggregateMetrics:
    cycles = list(cycles)
    counts = {outcome: 0 for outcome in CycleOutcome}
    for cycle in cycles:
        if cycle.outcome is not None:
            counts[cycle.outcome] += 1

    successful = [c for c in cycles if c.outcome == CycleOutcome.SUCCESS]
    durations = [c.duration_seconds for c in successful if c.duration_seconds is not None]
    idle_times = [c.idle_detection_seconds for c in successful if c.idle_detection_seconds is not None]
    ran = len(cycles) - counts[CycleOutcome.BLOCKED]

    return AggregateMetrics(
        total_cycles=len(cycles),
        successful_cycles=counts[CycleOutcome.SUCCESS],
        blocked_cycles=counts[CycleOutcome.BLOCKED],
        error_cycles=counts[CycleOutcome.ERROR],
        cancelled_cycles=counts[CycleOutcome.CANCELLED],
        avg_cycle_duration_seconds=statistics.fmean(durations) if durations else 0.0,
        p90_cycle_duration_seconds=percentile(durations, 0.9),
        avg_idle_detection_seconds=statistics.fmean(idle_times) if idle_times else 0.0,
        success_rate=round(100.0 * counts[CycleOutcome.SUCCESS] / ran, 1) if ran else 0.0,
    )
