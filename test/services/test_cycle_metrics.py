"""Tests for timing history and aggregate cycle metrics."""

import pytest

from cli_agent_respawn.models.config import RespawnConfig
from cli_agent_respawn.models.respawn import CycleMetrics, CycleOutcome
from cli_agent_respawn.services.cycle_metrics import TimingHistory, aggregate_metrics, percentile

ADAPTIVE = RespawnConfig(
    adaptive_timing_enabled=True, adaptive_min_confirm_ms=5000, adaptive_max_confirm_ms=30000
)


def cycle(number, outcome, duration=None, idle=None):
    return CycleMetrics(
        cycle_number=number,
        started_at=1000.0,
        duration_seconds=duration,
        idle_reason="completion_verified",
        idle_detection_seconds=idle,
        outcome=outcome,
    )


class TestTimingHistory:
    def test_needs_minimum_samples(self, clock):
        """Fewer than three samples -> configured completion_confirm_ms."""
        history = TimingHistory(clock)
        history.record(300.0, 20.0)
        history.record(300.0, 20.0)

        assert history.completion_confirm_ms(ADAPTIVE) == ADAPTIVE.completion_confirm_ms

    def test_median_of_idle_detection(self, clock):
        """Window is 5% of the median idle-detection time; outliers do not drag it."""
        history = TimingHistory(clock)
        for idle in (200.0, 240.0, 3000.0):
            history.record(idle, 20.0)

        assert history.completion_confirm_ms(ADAPTIVE) == 12000

    def test_clamped_to_bounds(self, clock):
        """Derived values outside [min, max] are clamped."""
        short = TimingHistory(clock)
        long = TimingHistory(clock)
        for _ in range(3):
            short.record(10.0, 5.0)
            long.record(3600.0, 5.0)

        assert short.completion_confirm_ms(ADAPTIVE) == 5000
        assert long.completion_confirm_ms(ADAPTIVE) == 30000

    def test_disabled_ignores_history(self, clock):
        """adaptive_timing_enabled=False -> always the configured window."""
        history = TimingHistory(clock)
        for _ in range(5):
            history.record(400.0, 20.0)

        assert history.completion_confirm_ms(RespawnConfig()) == 10000

    def test_rolling_window(self, clock):
        """Only the newest max_samples entries are kept."""
        history = TimingHistory(clock, max_samples=3)
        for idle in (1.0, 2.0, 3.0, 4.0):
            history.record(idle, idle * 10)

        status = history.status(ADAPTIVE)
        assert status.recent_idle_detection_seconds == [2.0, 3.0, 4.0]
        assert status.recent_cycle_duration_seconds == [20.0, 30.0, 40.0]
        assert status.sample_count == 3
        assert status.max_samples == 3
        assert status.last_updated_at == clock.now()


class TestAggregateMetrics:
    def test_empty_history(self):
        """No cycles -> all zeros."""
        metrics = aggregate_metrics([])
        assert metrics.total_cycles == 0
        assert metrics.success_rate == 0.0
        assert metrics.p90_cycle_duration_seconds == 0.0

    def test_counts_and_rates(self):
        """Blocked attempts are counted but excluded from the success rate."""
        metrics = aggregate_metrics(
            [
                cycle(1, CycleOutcome.SUCCESS, duration=10.0, idle=100.0),
                cycle(2, CycleOutcome.BLOCKED, duration=0.0, idle=50.0),
                cycle(2, CycleOutcome.ERROR, duration=3.0),
                cycle(3, CycleOutcome.SUCCESS, duration=20.0, idle=300.0),
                cycle(4, CycleOutcome.CANCELLED, duration=1.0),
            ]
        )

        assert metrics.total_cycles == 5
        assert metrics.successful_cycles == 2
        assert metrics.blocked_cycles == 1
        assert metrics.error_cycles == 1
        assert metrics.cancelled_cycles == 1
        assert metrics.success_rate == 50.0
        assert metrics.avg_cycle_duration_seconds == pytest.approx(15.0)
        assert metrics.avg_idle_detection_seconds == pytest.approx(200.0)

    def test_p90_duration(self):
        """Nearest-rank 90th percentile over successful cycle durations."""
        cycles = [cycle(n, CycleOutcome.SUCCESS, duration=float(n)) for n in range(1, 11)]
        assert aggregate_metrics(cycles).p90_cycle_duration_seconds == 9.0

    @pytest.mark.parametrize(
        "values,fraction,expected",
        [([5.0], 0.9, 5.0), ([3.0, 1.0, 2.0], 0.5, 2.0), ([1.0, 2.0], 1.0, 2.0)],
    )
    def test_percentile(self, values, fraction, expected):
        """Nearest-rank percentile on unsorted input."""
        assert percentile(values, fraction) == expected
