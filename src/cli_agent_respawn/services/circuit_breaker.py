"""Circuit breaker over repeated respawn cycles."""

import logging
from typing import Optional

from cli_agent_respawn.constants import (
    BREAKER_HALF_OPEN_NO_PROGRESS,
    BREAKER_OPEN_NO_PROGRESS,
    BREAKER_OPEN_SAME_ERROR,
)
from cli_agent_respawn.models.respawn import CircuitBreakerStatus, CircuitReason, CircuitState
from cli_agent_respawn.utils.timers import Clock

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Detects stuck loops from cycle outcomes.

    Transitions:
    - CLOSED -> HALF_OPEN: consecutive_no_progress >= 2
    - CLOSED -> OPEN: consecutive_no_progress >= 3 or consecutive_same_error >= 5
    - HALF_OPEN -> CLOSED: progress detected
    - HALF_OPEN -> OPEN: consecutive_no_progress >= 3
    - OPEN -> CLOSED: manual reset only
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._status = CircuitBreakerStatus(last_transition_at=clock.now())

    @property
    def state(self) -> CircuitState:
        return self._status.state

    @property
    def is_open(self) -> bool:
        return self._status.state == CircuitState.OPEN

    def status(self) -> CircuitBreakerStatus:
        return self._status.model_copy()

    def record_cycle(self, cycle: int, progress: bool, error: Optional[str] = None) -> CircuitState:
        """Record one finished (or aborted) cycle and return the resulting state."""
        s = self._status
        if progress:
            s.consecutive_no_progress = 0
            s.last_progress_cycle = cycle
        else:
            s.consecutive_no_progress += 1

        if error:
            s.consecutive_same_error = s.consecutive_same_error + 1 if error == s.last_error else 1
            s.last_error = error
        else:
            s.consecutive_same_error = 0

        if s.state == CircuitState.CLOSED:
            if s.consecutive_no_progress >= BREAKER_OPEN_NO_PROGRESS:
                self._transition(
                    CircuitState.OPEN,
                    CircuitReason.NO_PROGRESS_OPEN,
                    f"No progress for {s.consecutive_no_progress} cycles",
                )
            elif s.consecutive_same_error >= BREAKER_OPEN_SAME_ERROR:
                self._transition(
                    CircuitState.OPEN,
                    CircuitReason.SAME_ERROR_REPEATED,
                    f"Same error repeated {s.consecutive_same_error} times: {s.last_error}",
                )
            elif s.consecutive_no_progress >= BREAKER_HALF_OPEN_NO_PROGRESS:
                self._transition(
                    CircuitState.HALF_OPEN,
                    CircuitReason.NO_PROGRESS_WARNING,
                    f"No progress for {s.consecutive_no_progress} cycles",
                )
        elif s.state == CircuitState.HALF_OPEN:
            if progress:
                self._transition(
                    CircuitState.CLOSED, CircuitReason.PROGRESS_DETECTED, "Progress detected"
                )
            elif s.consecutive_no_progress >= BREAKER_OPEN_NO_PROGRESS:
                self._transition(
                    CircuitState.OPEN,
                    CircuitReason.NO_PROGRESS_OPEN,
                    f"No progress for {s.consecutive_no_progress} cycles",
                )
        return s.state

    def reset(self) -> None:
        """Manual reset, the only way out of OPEN."""
        s = self._status
        s.consecutive_no_progress = 0
        s.consecutive_same_error = 0
        s.last_error = None
        self._transition(CircuitState.CLOSED, CircuitReason.MANUAL_RESET, "Manual reset")

    def _transition(self, state: CircuitState, reason_code: CircuitReason, reason: str) -> None:
        s = self._status
        previous = s.state
        s.state = state
        s.reason_code = reason_code
        s.reason = reason
        s.last_transition_at = self.clock.now()
        if state == CircuitState.OPEN:
            logger.warning(f"Circuit breaker {previous.value} -> open: {reason}")
        else:
            logger.info(f"Circuit breaker {previous.value} -> {state.value}: {reason}")
