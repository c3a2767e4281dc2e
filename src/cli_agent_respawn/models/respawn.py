"""Respawn controller domain models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class RespawnState(str, Enum):
    """States of the respawn cycle state machine, in traversal order."""

    STOPPED = "stopped"
    WATCHING = "watching"
    CONFIRMING_IDLE = "confirming_idle"
    AI_CHECKING = "ai_checking"
    SENDING_UPDATE = "sending_update"
    WAITING_UPDATE = "waiting_update"
    SENDING_CLEAR = "sending_clear"
    WAITING_CLEAR = "waiting_clear"
    SENDING_INIT = "sending_init"
    WAITING_INIT = "waiting_init"
    MONITORING_INIT = "monitoring_init"
    SENDING_KICKSTART = "sending_kickstart"
    WAITING_KICKSTART = "waiting_kickstart"


class RespawnStep(str, Enum):
    """Side-effecting steps of one respawn cycle."""

    UPDATE = "update"
    CLEAR = "clear"
    INIT = "init"
    KICKSTART = "kickstart"


# sending_* / waiting_* state for each step
STEP_STATES = {
    RespawnStep.UPDATE: (RespawnState.SENDING_UPDATE, RespawnState.WAITING_UPDATE),
    RespawnStep.CLEAR: (RespawnState.SENDING_CLEAR, RespawnState.WAITING_CLEAR),
    RespawnStep.INIT: (RespawnState.SENDING_INIT, RespawnState.WAITING_INIT),
    RespawnStep.KICKSTART: (RespawnState.SENDING_KICKSTART, RespawnState.WAITING_KICKSTART),
}


class Verdict(str, Enum):
    """Tri-state answer of a verifier oracle."""

    CONFIRMED = "confirmed"
    NOT_CONFIRMED = "not_confirmed"
    ERROR = "error"


class VerifierKind(str, Enum):
    """Question asked of a verifier oracle."""

    IDLE = "idle"
    PLAN = "plan"


class VerifierStage(str, Enum):
    """Lifecycle stage of a verifier adapter."""

    READY = "ready"
    CHECKING = "checking"
    COOLDOWN = "cooldown"
    DISABLED = "disabled"


class CircuitState(str, Enum):
    """Circuit breaker states.

    - CLOSED: normal operation
    - HALF_OPEN: warning, some cycles made no progress
    - OPEN: loop is stuck, only a manual reset closes it again
    """

    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


class CircuitReason(str, Enum):
    """Reason codes for circuit breaker transitions."""

    NORMAL_OPERATION = "normal_operation"
    NO_PROGRESS_WARNING = "no_progress_warning"
    NO_PROGRESS_OPEN = "no_progress_open"
    SAME_ERROR_REPEATED = "same_error_repeated"
    PROGRESS_DETECTED = "progress_detected"
    MANUAL_RESET = "manual_reset"


class CycleOutcome(str, Enum):
    """How a respawn cycle ended."""

    SUCCESS = "success"
    BLOCKED = "blocked"
    ERROR = "error"
    CANCELLED = "cancelled"


class VerifierStatus(BaseModel):
    """Snapshot of one verifier adapter."""

    name: str = Field(..., description="Verifier name (idle or plan)")
    stage: VerifierStage = VerifierStage.READY
    enabled: bool = True
    consecutive_errors: int = 0
    cooldown_until: Optional[float] = None
    cooldown_remaining_seconds: float = 0.0
    last_error: Optional[str] = None
    disabled_reason: Optional[str] = None
    total_checks: int = 0


class CircuitBreakerStatus(BaseModel):
    """Snapshot of the circuit breaker."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_no_progress: int = 0
    consecutive_same_error: int = 0
    last_progress_cycle: int = 0
    last_transition_at: float = 0.0
    last_error: Optional[str] = None
    reason: str = "Initial state"
    reason_code: CircuitReason = CircuitReason.NORMAL_OPERATION


class TimerInfo(BaseModel):
    """An armed timer, as reported for observability."""

    name: str
    purpose: str
    fires_at: float
    remaining_seconds: float


class ActionLogEntry(BaseModel):
    """A completed controller action (observational only)."""

    timestamp: float
    action: str
    detail: str = ""


class CycleMetrics(BaseModel):
    """Metrics for a single respawn cycle."""

    cycle_number: int
    started_at: float
    completed_at: Optional[float] = None
    duration_seconds: Optional[float] = None
    idle_reason: str
    idle_detection_seconds: Optional[float] = None
    completion_confirm_ms_used: Optional[int] = None
    steps_completed: List[RespawnStep] = Field(default_factory=list)
    clear_skipped: bool = False
    outcome: Optional[CycleOutcome] = None
    error_message: Optional[str] = None
    token_count_at_start: Optional[int] = None
    token_count_at_end: Optional[int] = None


class AggregateMetrics(BaseModel):
    """Summary of the recorded cycle history.

    Durations cover successful cycles only. The success rate is taken over
    cycles that actually ran, so blocked attempts do not count against it.
    """

    total_cycles: int = 0
    successful_cycles: int = 0
    blocked_cycles: int = 0
    error_cycles: int = 0
    cancelled_cycles: int = 0
    avg_cycle_duration_seconds: float = 0.0
    p90_cycle_duration_seconds: float = 0.0
    avg_idle_detection_seconds: float = 0.0
    success_rate: float = Field(0.0, description="Percentage of cycles that ran and succeeded")


class TimingHistoryStatus(BaseModel):
    """Rolling timing windows behind the adaptive confirmation window."""

    recent_idle_detection_seconds: List[float] = Field(default_factory=list)
    recent_cycle_duration_seconds: List[float] = Field(default_factory=list)
    sample_count: int = 0
    max_samples: int = 0
    adaptive_completion_confirm_ms: int
    last_updated_at: Optional[float] = None


class RespawnStatus(BaseModel):
    """Full controller snapshot for UIs and the CLI."""

    session_id: str
    state: RespawnState
    paused: bool = False
    cycle_count: int = 0
    config_version: int = 0
    last_output_at: Optional[float] = None
    last_completion_at: Optional[float] = None
    last_token_count_at: Optional[float] = None
    token_count: Optional[int] = None
    step_deadline: Optional[float] = None
    timers: List[TimerInfo] = Field(default_factory=list)
    idle_verifier: VerifierStatus
    plan_verifier: VerifierStatus
    circuit_breaker: CircuitBreakerStatus
    timing: TimingHistoryStatus
    metrics: AggregateMetrics
