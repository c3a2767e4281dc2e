"""Respawn controller: idle detection and the respawn cycle state machine.

One controller per session. It owns the buffer, the timer registry, both
verifier adapters, the circuit breaker, the plan auto-accept detector and the
event channel. Everything runs on one asyncio loop: terminal-data callbacks,
timer callbacks and task completions never overlap.

Every async completion (oracle verdicts, step writes) re-validates through
``is_stale`` / the captured epoch before touching state. The epoch is bumped
on every state transition and on ``stop()``.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Deque, Mapping, Optional, Protocol, Set

from cli_agent_respawn.constants import (
    ACTION_LOG_SIZE,
    CYCLE_METRICS_SIZE,
    ENTER_KEY,
    IDLE_VERIFIER_MAX_CONTEXT,
    MAX_STEP_WRITE_ATTEMPTS,
    PLAN_VERIFIER_MAX_CONTEXT,
    RESPAWN_BUFFER_MAX_SIZE,
    RESPAWN_BUFFER_TRIM_SIZE,
)
from cli_agent_respawn.models.config import RespawnConfig
from cli_agent_respawn.models.respawn import (
    STEP_STATES,
    ActionLogEntry,
    CycleMetrics,
    CycleOutcome,
    RespawnState,
    RespawnStatus,
    RespawnStep,
    Verdict,
    VerifierKind,
)
from cli_agent_respawn.providers.claude_code import (
    detect_completion_message,
    detect_prompt,
    detect_working,
    extract_token_count,
    is_substantial_output,
)
from cli_agent_respawn.services.circuit_breaker import CircuitBreaker
from cli_agent_respawn.services.cycle_metrics import TimingHistory, aggregate_metrics
from cli_agent_respawn.services.plan_auto_accept import PlanAutoAcceptDetector
from cli_agent_respawn.services.verifier import Oracle, VerifierAdapter, VerifierRequest
from cli_agent_respawn.utils.buffer import RespawnBuffer
from cli_agent_respawn.utils.events import EventChannel, RespawnEvent
from cli_agent_respawn.utils.timers import AsyncioClock, Clock, TimerRegistry

logger = logging.getLogger(__name__)

# Timer names
TIMER_COMPLETION_CONFIRM = "completion_confirm"
TIMER_NO_OUTPUT = "no_output"
TIMER_STEP_DELAY = "step_delay"
TIMER_STEP_SETTLE = "step_settle"
TIMER_STEP_FALLBACK = "step_fallback"
TIMER_STEP_RETRY = "step_retry"
TIMER_INIT_MONITOR = "init_monitor"
TIMER_AI_CHECK_COOLDOWN = "ai_check_cooldown"

STEP_TIMERS = (
    TIMER_STEP_DELAY,
    TIMER_STEP_SETTLE,
    TIMER_STEP_FALLBACK,
    TIMER_STEP_RETRY,
    TIMER_INIT_MONITOR,
)

# Block reasons
BLOCKED_ACTIVE_TEAMMATES = "active_teammates"
BLOCKED_CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"

# Idle reasons recorded in cycle metrics
IDLE_COMPLETION_DETECTED = "completion_detected"
IDLE_COMPLETION_VERIFIED = "completion_verified"
IDLE_COMPLETION_CONFIRMED = "completion_confirmed"
IDLE_NO_OUTPUT_TIMEOUT = "no_output_timeout"


class Session(Protocol):
    """Terminal the agent runs in. Output is pushed via ``handle_terminal_data``."""

    async def write(self, text: str) -> bool: ...


class TeamWatcherProtocol(Protocol):
    def has_active_teammates(self, session_id: str) -> bool: ...


class RespawnController:
    """Watches one agent session and drives update/clear/init/kickstart cycles."""

    def __init__(
        self,
        session_id: str,
        session: Session,
        *,
        config: Optional[RespawnConfig] = None,
        idle_oracle: Optional[Oracle] = None,
        plan_oracle: Optional[Oracle] = None,
        team_watcher: Optional[TeamWatcherProtocol] = None,
        team_session_id: Optional[str] = None,
        clock: Optional[Clock] = None,
        buffer: Optional[RespawnBuffer] = None,
    ):
        self.session_id = session_id
        self.session = session
        self.team_watcher = team_watcher
        # Agent session id the team files name as lead, when it differs from session_id
        self.team_session_id = team_session_id or session_id
        self.clock = clock or AsyncioClock()
        self.buffer = buffer or RespawnBuffer(RESPAWN_BUFFER_MAX_SIZE, RESPAWN_BUFFER_TRIM_SIZE)
        self.events = EventChannel()
        self.timers = TimerRegistry(self.clock, on_cancel=self._on_timer_cancelled)
        self.breaker = CircuitBreaker(self.clock)
        self.action_log: Deque[ActionLogEntry] = deque(maxlen=ACTION_LOG_SIZE)
        self.cycle_metrics: Deque[CycleMetrics] = deque(maxlen=CYCLE_METRICS_SIZE)
        self.timing = TimingHistory(self.clock)

        self._config = config or RespawnConfig()
        self._cycle_config = self._config
        self._has_idle_oracle = idle_oracle is not None
        self._has_plan_oracle = plan_oracle is not None
        self.idle_verifier = VerifierAdapter(
            "idle",
            VerifierKind.IDLE,
            idle_oracle,
            self.clock,
            self.events,
            enabled=self._config.idle_verifier_enabled and self._has_idle_oracle,
            cooldown_ms=self._config.idle_verifier_cooldown_ms,
            timeout_ms=self._config.idle_verifier_timeout_ms,
            max_consecutive_errors=self._config.max_consecutive_verifier_errors,
            max_context=IDLE_VERIFIER_MAX_CONTEXT,
        )
        self.plan_verifier = VerifierAdapter(
            "plan",
            VerifierKind.PLAN,
            plan_oracle,
            self.clock,
            self.events,
            enabled=self._config.plan_verifier_enabled and self._has_plan_oracle,
            cooldown_ms=self._config.plan_verifier_cooldown_ms,
            timeout_ms=self._config.plan_verifier_timeout_ms,
            max_consecutive_errors=self._config.max_consecutive_verifier_errors,
            max_context=PLAN_VERIFIER_MAX_CONTEXT,
        )
        self.plan_detector = PlanAutoAcceptDetector(self, self.plan_verifier)

        self._state = RespawnState.STOPPED
        self._paused = False
        self._epoch = 0
        self._tasks: Set[asyncio.Future] = set()

        self.started_at: Optional[float] = None
        self.watch_started_at: Optional[float] = None
        self.last_output_time: Optional[float] = None
        self.last_completion_time: Optional[float] = None
        self.last_token_count_time: Optional[float] = None
        self.token_count: Optional[int] = None

        # Scan marks: positions in the buffer's total_appended stream
        self._completion_mark = 0
        self._step_mark = 0

        self._current_step: Optional[RespawnStep] = None
        self._step_sent = False
        self._step_attempts = 0
        self._step_deadline: Optional[float] = None

        self._cycle_count = 0
        self._cycle: Optional[CycleMetrics] = None
        self._cycle_progress = False
        self._cycle_error: Optional[str] = None
        self._confirm_ms_used: Optional[int] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> RespawnState:
        return self._state

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_running(self) -> bool:
        return self._state != RespawnState.STOPPED

    @property
    def config(self) -> RespawnConfig:
        return self._config

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def current_step(self) -> Optional[RespawnStep]:
        return self._current_step

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start watching. Returns False when the controller refuses to start."""
        if self._state != RespawnState.STOPPED:
            logger.debug(f"[{self.session_id}] start() ignored, already {self._state.value}")
            return True
        if not self._config.enabled:
            logger.info(f"[{self.session_id}] Respawn disabled by configuration, not starting")
            return False
        if self.breaker.is_open:
            logger.warning(f"[{self.session_id}] Circuit breaker open, refusing to start")
            self.events.emit(RespawnEvent.RESPAWN_BLOCKED, reason=BLOCKED_CIRCUIT_BREAKER_OPEN)
            return False

        self._paused = False
        self.started_at = self.clock.now()
        self._completion_mark = self.buffer.total_appended
        self._begin_idle_detection()
        self.plan_detector.reset()
        logger.info(f"[{self.session_id}] Respawn controller started")
        self.log_action("start")
        self._set_state(RespawnState.WATCHING)
        self._arm_idle_detection()
        return True

    def stop(self) -> None:
        """Cancel every timer, invalidate in-flight work and enter ``stopped``."""
        if self._state == RespawnState.STOPPED:
            return
        self.timers.cancel_all("stopped")
        self.idle_verifier.cancel("stopped")
        self.plan_verifier.cancel("stopped")
        if self._cycle is not None:
            self._finish_cycle_metrics(CycleOutcome.CANCELLED, "stopped")
        self._paused = False
        self._current_step = None
        self._step_deadline = None
        logger.info(f"[{self.session_id}] Respawn controller stopped")
        self.log_action("stop")
        self._set_state(RespawnState.STOPPED)

    def pause(self) -> None:
        """Suspend all timers. The state name is kept."""
        if self._state == RespawnState.STOPPED or self._paused:
            return
        self._paused = True
        self.timers.cancel_all("paused")
        logger.info(f"[{self.session_id}] Paused in {self._state.value}")
        self.log_action("pause", self._state.value)

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        logger.info(f"[{self.session_id}] Resumed in {self._state.value}")
        self.log_action("resume", self._state.value)

        state = self._state
        if state == RespawnState.WATCHING:
            self._arm_idle_detection()
            self._check_completion()
        elif state in (RespawnState.CONFIRMING_IDLE, RespawnState.AI_CHECKING):
            self.idle_verifier.cancel("paused")
            self._return_to_watching(consume=False)
            self._check_completion()
        elif state == RespawnState.MONITORING_INIT:
            self._arm_init_monitor()
        elif self._current_step is not None:
            sending, waiting = STEP_STATES[self._current_step]
            if state == sending:
                if self._step_sent:
                    self._enter_waiting(self._current_step)
                else:
                    self._write_step()
            elif state == waiting:
                self._arm_step_fallback(self._current_step)
                if detect_prompt(self.buffer.since(self._step_mark)):
                    self._arm_step_settle()

    def update_config(self, update: Mapping[str, Any]) -> RespawnConfig:
        """Apply a partial update. The running cycle keeps its own snapshot."""
        old = self._config
        new = old.apply_update(update)
        self._config = new

        self.idle_verifier.configure(
            enabled=new.idle_verifier_enabled and self._has_idle_oracle,
            cooldown_ms=new.idle_verifier_cooldown_ms,
            timeout_ms=new.idle_verifier_timeout_ms,
            max_consecutive_errors=new.max_consecutive_verifier_errors,
        )
        if self._is_reenabled(update, "idle_verifier_enabled", old, self.idle_verifier):
            self.idle_verifier.enable()

        self.plan_verifier.configure(
            enabled=new.plan_verifier_enabled and self._has_plan_oracle,
            cooldown_ms=new.plan_verifier_cooldown_ms,
            timeout_ms=new.plan_verifier_timeout_ms,
            max_consecutive_errors=new.max_consecutive_verifier_errors,
        )
        if self._is_reenabled(update, "plan_verifier_enabled", old, self.plan_verifier):
            self.plan_verifier.enable()

        logger.info(
            f"[{self.session_id}] Config updated to v{new.version}: {', '.join(sorted(update))}"
        )
        self.log_action("config_update", f"v{new.version}")

        if not new.enabled and self._state != RespawnState.STOPPED:
            self.stop()
        elif self._state == RespawnState.WATCHING and not self._paused:
            self._arm_idle_detection()
            if not new.auto_accept_prompts:
                self.plan_detector.deactivate("auto_accept_disabled")
        return new

    @staticmethod
    def _is_reenabled(
        update: Mapping[str, Any], field: str, old: RespawnConfig, verifier: VerifierAdapter
    ) -> bool:
        """True for an explicit switch-on: the flag was off, or errors had disabled it."""
        if update.get(field) is not True or verifier.oracle is None:
            return False
        return not getattr(old, field) or verifier.disabled_reason is not None

    def reset_circuit_breaker(self) -> None:
        self.breaker.reset()
        self.log_action("circuit_breaker_reset")

    def get_status(self) -> RespawnStatus:
        return RespawnStatus(
            session_id=self.session_id,
            state=self._state,
            paused=self._paused,
            cycle_count=self._cycle_count,
            config_version=self._config.version,
            last_output_at=self.last_output_time,
            last_completion_at=self.last_completion_time,
            last_token_count_at=self.last_token_count_time,
            token_count=self.token_count,
            step_deadline=self._step_deadline,
            timers=self.timers.snapshot(),
            idle_verifier=self.idle_verifier.status(),
            plan_verifier=self.plan_verifier.status(),
            circuit_breaker=self.breaker.status(),
            timing=self.timing.status(self._config),
            metrics=aggregate_metrics(self.cycle_metrics),
        )

    async def aclose(self) -> None:
        """Stop and wait for outstanding tasks (oracle calls are cancelled)."""
        self.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Terminal data
    # ------------------------------------------------------------------

    def handle_terminal_data(self, data: str) -> None:
        """Feed one raw output chunk from the session."""
        if not data:
            return
        self.buffer.append(data)
        if self._state == RespawnState.STOPPED:
            return

        now = self.clock.now()
        substantial = is_substantial_output(data)
        working = detect_working(data)
        if substantial:
            self.last_output_time = now

        tokens = extract_token_count(data)
        if tokens is not None:
            if self._cycle is not None and self.token_count is not None and tokens != self.token_count:
                self._cycle_progress = True
            self.token_count = tokens
            self.last_token_count_time = now
        if working and self._cycle is not None:
            self._cycle_progress = True

        if self._paused:
            return

        state = self._state
        if state == RespawnState.WATCHING:
            self._on_watching_data(working, substantial)
        elif state == RespawnState.CONFIRMING_IDLE:
            self._on_confirming_data(working, substantial)
        elif state == RespawnState.AI_CHECKING:
            self._on_ai_checking_data(working, substantial)
        elif state == RespawnState.MONITORING_INIT:
            if working:
                self.timers.cancel(TIMER_INIT_MONITOR, "working_detected")
                logger.info(f"[{self.session_id}] Kickstart skipped: init triggered work")
                self.log_action("kickstart_skipped", "init triggered work")
                self._complete_cycle()
        elif self._current_step is not None and state == STEP_STATES[self._current_step][1]:
            self._on_waiting_data(working)

    def _on_watching_data(self, working: bool, substantial: bool) -> None:
        if self.idle_verifier.is_disabled and substantial:
            self._arm_no_output_timer()

        if working:
            self._completion_mark = self.buffer.total_appended
        else:
            self._check_completion()
        if self._state == RespawnState.WATCHING:
            self.plan_detector.on_terminal_data(working, substantial)

    def _on_confirming_data(self, working: bool, substantial: bool) -> None:
        if working:
            self.timers.cancel(TIMER_COMPLETION_CONFIRM, "working_detected")
            logger.debug(f"[{self.session_id}] Completion suppressed by working signal")
            self._completion_mark = self.buffer.total_appended
            self._return_to_watching(consume=False)
        elif substantial:
            # The completion is not consumed, so it re-arms a fresh window
            self.timers.cancel(TIMER_COMPLETION_CONFIRM, "output_received")
            self._return_to_watching(consume=False)
            self._check_completion()

    def _on_ai_checking_data(self, working: bool, substantial: bool) -> None:
        if not (working or substantial):
            return
        reason = "working_detected" if working else "output_received"
        self.idle_verifier.cancel(reason)
        logger.info(f"[{self.session_id}] Idle check cancelled: {reason}")
        if working:
            self._completion_mark = self.buffer.total_appended
        self._return_to_watching(consume=False)
        if not working:
            self._check_completion()

    def _on_waiting_data(self, working: bool) -> None:
        if working:
            self.timers.cancel(TIMER_STEP_SETTLE, "working_detected")
            return
        if not self.timers.is_armed(TIMER_STEP_SETTLE) and detect_prompt(
            self.buffer.since(self._step_mark)
        ):
            self._arm_step_settle()

    # ------------------------------------------------------------------
    # Idle detection
    # ------------------------------------------------------------------

    def _check_completion(self) -> None:
        if self._state != RespawnState.WATCHING or self._paused:
            return
        duration = detect_completion_message(self.buffer.since(self._completion_mark))
        if duration is None:
            return
        self.last_completion_time = self.clock.now()
        if self.breaker.is_open:
            self._completion_mark = self.buffer.total_appended
            self._block(BLOCKED_CIRCUIT_BREAKER_OPEN, IDLE_COMPLETION_DETECTED)
            return
        confirm_ms = self.timing.completion_confirm_ms(self._config)
        self._confirm_ms_used = confirm_ms
        logger.info(
            f"[{self.session_id}] Completion message detected (worked for {duration}), "
            f"confirming for {confirm_ms}ms"
        )
        self._set_state(RespawnState.CONFIRMING_IDLE)
        self.timers.arm(
            TIMER_COMPLETION_CONFIRM,
            confirm_ms,
            self._on_completion_confirmed,
            purpose="idle confirmation window",
        )

    def _on_completion_confirmed(self) -> None:
        if self._state != RespawnState.CONFIRMING_IDLE or self._paused:
            return
        self._completion_mark = self.buffer.total_appended

        if self._teammates_active():
            self._block(BLOCKED_ACTIVE_TEAMMATES, IDLE_COMPLETION_CONFIRMED)
            self._return_to_watching(consume=True)
            return
        if self.breaker.is_open:
            self._block(BLOCKED_CIRCUIT_BREAKER_OPEN, IDLE_COMPLETION_CONFIRMED)
            self._return_to_watching(consume=True)
            return

        if not self.idle_verifier.is_disabled:
            rejection = self.idle_verifier.pre_filter()
            if rejection is None:
                self._start_ai_check()
                return
            if rejection == "cooldown":
                remaining = self.idle_verifier.cooldown_remaining()
                logger.info(f"[{self.session_id}] Idle verifier cooling down ({remaining:.0f}s left)")
                self.events.emit(RespawnEvent.AI_CHECK_COOLDOWN, active=True, remaining=remaining)
                self._return_to_watching(consume=True)
                return
            if rejection == "checking":
                self._return_to_watching(consume=True)
                return

        # Idle verifier disabled: require total silence instead of a verdict
        silence_ms = self._silence_ms()
        if silence_ms >= self._config.no_output_timeout_ms:
            self._start_cycle(IDLE_COMPLETION_CONFIRMED)
        else:
            self._return_to_watching(consume=True)

    def _start_ai_check(self) -> None:
        self._set_state(RespawnState.AI_CHECKING)
        request = self.idle_verifier.begin(self._epoch)
        logger.info(f"[{self.session_id}] Idle check #{request.request_id} started")
        self.events.emit(RespawnEvent.AI_CHECK_STARTED)
        self.spawn(self._run_idle_check(request, self.buffer.value))

    async def _run_idle_check(self, request: VerifierRequest, snapshot: str) -> None:
        result = await self.idle_verifier.run(request, snapshot, self.is_stale)
        if result is None:
            return

        if result.verdict == Verdict.CONFIRMED:
            logger.info(f"[{self.session_id}] Idle verifier confirmed idle")
            self.events.emit(RespawnEvent.AI_CHECK_COMPLETED, verdict=result.verdict)
            self._start_cycle(IDLE_COMPLETION_VERIFIED)
        elif result.verdict == Verdict.NOT_CONFIRMED:
            remaining = self.idle_verifier.cooldown_remaining()
            logger.info(f"[{self.session_id}] Idle verifier: still working")
            self.events.emit(RespawnEvent.AI_CHECK_COMPLETED, verdict=result.verdict)
            self._return_to_watching(consume=True)
            self.events.emit(RespawnEvent.AI_CHECK_COOLDOWN, active=True, remaining=remaining)
            if remaining > 0:
                self.timers.arm(
                    TIMER_AI_CHECK_COOLDOWN,
                    remaining * 1000.0,
                    self._on_cooldown_expired,
                    purpose="idle verifier cooldown",
                )
        else:
            self.events.emit(RespawnEvent.AI_CHECK_FAILED, reason=result.reason)
            self._return_to_watching(consume=True)

    def _on_cooldown_expired(self) -> None:
        self.events.emit(RespawnEvent.AI_CHECK_COOLDOWN, active=False, remaining=0.0)

    def _arm_idle_detection(self) -> None:
        if self.idle_verifier.is_disabled:
            self._arm_no_output_timer(self._config.no_output_timeout_ms - self._silence_ms())
        else:
            self.timers.cancel(TIMER_NO_OUTPUT, "idle_verifier_enabled")

    def _arm_no_output_timer(self, delay_ms: Optional[float] = None) -> None:
        if delay_ms is None:
            delay_ms = self._config.no_output_timeout_ms
        self.timers.arm(
            TIMER_NO_OUTPUT, max(0.0, delay_ms), self._on_no_output, purpose="no-output fallback"
        )

    def _on_no_output(self) -> None:
        if self._state != RespawnState.WATCHING or self._paused:
            return
        if not self.idle_verifier.is_disabled:
            return
        if self._teammates_active():
            self._block(BLOCKED_ACTIVE_TEAMMATES, IDLE_NO_OUTPUT_TIMEOUT)
            self._arm_no_output_timer()
            return
        if self.breaker.is_open:
            self._block(BLOCKED_CIRCUIT_BREAKER_OPEN, IDLE_NO_OUTPUT_TIMEOUT)
            return
        logger.info(
            f"[{self.session_id}] No output for {self._config.no_output_timeout_ms}ms, treating as idle"
        )
        self._start_cycle(IDLE_NO_OUTPUT_TIMEOUT)

    def _silence_ms(self) -> float:
        last = self.last_output_time
        if last is None:
            last = self.started_at if self.started_at is not None else self.clock.now()
        return (self.clock.now() - last) * 1000.0

    def _teammates_active(self) -> bool:
        if self.team_watcher is None:
            return False
        try:
            return self.team_watcher.has_active_teammates(self.team_session_id)
        except Exception as e:
            logger.warning(f"[{self.session_id}] Team check failed, assuming no teammates: {e}")
            return False

    def _block(self, reason: str, idle_reason: Optional[str] = None) -> None:
        """Report a refused cycle. ``idle_reason`` marks an idle detection that was turned away."""
        logger.warning(f"[{self.session_id}] Respawn blocked: {reason}")
        self.log_action("blocked", reason)
        if idle_reason is not None:
            now = self.clock.now()
            self.cycle_metrics.append(
                CycleMetrics(
                    cycle_number=self._cycle_count + 1,
                    started_at=now,
                    completed_at=now,
                    duration_seconds=0.0,
                    idle_reason=idle_reason,
                    idle_detection_seconds=self._idle_detection_seconds(),
                    completion_confirm_ms_used=self._confirm_ms_used,
                    outcome=CycleOutcome.BLOCKED,
                    error_message=reason,
                    token_count_at_start=self.token_count,
                    token_count_at_end=self.token_count,
                )
            )
        self.events.emit(RespawnEvent.RESPAWN_BLOCKED, reason=reason)

    def _begin_idle_detection(self) -> None:
        self.watch_started_at = self.clock.now()
        self._confirm_ms_used = None

    def _idle_detection_seconds(self) -> Optional[float]:
        if self.watch_started_at is None:
            return None
        return self.clock.now() - self.watch_started_at

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _start_cycle(self, idle_reason: str) -> None:
        self._cycle_count += 1
        self._cycle_config = self._config
        self._cycle_progress = False
        self._cycle_error = None
        self._cycle = CycleMetrics(
            cycle_number=self._cycle_count,
            started_at=self.clock.now(),
            idle_reason=idle_reason,
            idle_detection_seconds=self._idle_detection_seconds(),
            completion_confirm_ms_used=self._confirm_ms_used,
            token_count_at_start=self.token_count,
        )
        self.timers.cancel(TIMER_NO_OUTPUT, "cycle_started")
        self.timers.cancel(TIMER_AI_CHECK_COOLDOWN, "cycle_started")
        logger.info(f"[{self.session_id}] Starting respawn cycle #{self._cycle_count} ({idle_reason})")
        self.log_action("cycle_started", idle_reason)
        self._send_step(RespawnStep.UPDATE)

    def _step_text(self, step: RespawnStep) -> Optional[str]:
        cfg = self._cycle_config
        if step == RespawnStep.UPDATE:
            return cfg.update_prompt
        if step == RespawnStep.CLEAR:
            return cfg.clear_command
        if step == RespawnStep.INIT:
            return cfg.init_command
        return cfg.kickstart_prompt

    def _send_step(self, step: RespawnStep) -> None:
        self._current_step = step
        self._step_sent = False
        self._step_attempts = 0
        self._set_state(STEP_STATES[step][0])
        self._write_step()

    def _write_step(self) -> None:
        step = self._current_step
        text = self._step_text(step) or ""
        self._step_attempts += 1
        self.spawn(self._do_write_step(step, text, self._step_attempts, self._epoch))

    async def _do_write_step(self, step: RespawnStep, text: str, attempt: int, epoch: int) -> None:
        ok = await self.safe_write(text + ENTER_KEY)
        if epoch != self._epoch:
            logger.debug(f"[{self.session_id}] Dropping result of {step.value} write: state moved on")
            return

        if not ok:
            error = f"failed to send {step.value} step"
            self.report_error(f"{error} (attempt {attempt}/{MAX_STEP_WRITE_ATTEMPTS})")
            self._cycle_error = error
            if attempt >= MAX_STEP_WRITE_ATTEMPTS:
                self._abort_cycle(error)
            elif not self._paused:
                self.timers.arm(
                    TIMER_STEP_RETRY,
                    self._cycle_config.inter_step_delay_ms,
                    self._write_step,
                    purpose=f"retry {step.value} step",
                )
            return

        self._step_sent = True
        logger.info(f"[{self.session_id}] Sent {step.value} step")
        self.log_action("step_sent", step.value)
        self.events.emit(RespawnEvent.STEP_SENT, step=step)
        if self._paused:
            return
        self.timers.arm(
            TIMER_STEP_DELAY,
            self._cycle_config.inter_step_delay_ms,
            lambda: self._enter_waiting(step),
            purpose="inter-step delay",
        )

    def _enter_waiting(self, step: RespawnStep) -> None:
        self._set_state(STEP_STATES[step][1])
        self._step_mark = self.buffer.total_appended
        self._arm_step_fallback(step)

    def _arm_step_fallback(self, step: RespawnStep) -> None:
        cfg = self._cycle_config
        if step == RespawnStep.CLEAR:
            delay_ms = cfg.clear_fallback_ms
        elif step == RespawnStep.INIT:
            delay_ms = cfg.init_fallback_ms
        else:
            delay_ms = None
        if delay_ms is None:
            self._step_deadline = None
            return
        self._step_deadline = self.clock.now() + delay_ms / 1000.0
        self.timers.arm(
            TIMER_STEP_FALLBACK,
            delay_ms,
            lambda: self._on_step_fallback(step, delay_ms),
            purpose=f"{step.value} step fallback",
        )

    def _arm_step_settle(self) -> None:
        step = self._current_step
        self.timers.arm(
            TIMER_STEP_SETTLE,
            self._cycle_config.idle_timeout_ms,
            lambda: self._complete_step(step, "prompt_detected"),
            purpose=f"{step.value} prompt settle",
        )

    def _on_step_fallback(self, step: RespawnStep, delay_ms: int) -> None:
        logger.warning(
            f"[{self.session_id}] {step.value} step fallback: no prompt detected after "
            f"{delay_ms}ms, forcing completion"
        )
        self._complete_step(step, "fallback_timeout")

    def _complete_step(self, step: RespawnStep, reason: str) -> None:
        if self._current_step != step or self._state != STEP_STATES[step][1]:
            return
        self.timers.cancel(TIMER_STEP_SETTLE, "step_completed")
        self.timers.cancel(TIMER_STEP_FALLBACK, "step_completed")
        self._step_deadline = None
        logger.info(f"[{self.session_id}] {step.value} step completed ({reason})")
        self.log_action("step_completed", f"{step.value}: {reason}")
        if self._cycle is not None:
            self._cycle.steps_completed.append(step)
        self.events.emit(RespawnEvent.STEP_COMPLETED, step=step)

        if step == RespawnStep.UPDATE:
            self._after_update()
        elif step == RespawnStep.CLEAR:
            self._after_clear()
        elif step == RespawnStep.INIT:
            self._enter_monitoring_init()
        else:
            self._complete_cycle()

    def _after_update(self) -> None:
        cfg = self._cycle_config
        if not (cfg.send_clear and cfg.clear_command):
            self._after_clear()
            return
        if (
            cfg.skip_clear_when_low_context
            and self.token_count is not None
            and self.token_count < cfg.skip_clear_threshold_tokens
        ):
            logger.info(
                f"[{self.session_id}] Skipping clear: {self.token_count} tokens is below "
                f"{cfg.skip_clear_threshold_tokens}"
            )
            self.log_action("clear_skipped", f"{self.token_count} tokens")
            if self._cycle is not None:
                self._cycle.clear_skipped = True
            self._after_clear()
            return
        self._send_step(RespawnStep.CLEAR)

    def _after_clear(self) -> None:
        cfg = self._cycle_config
        if cfg.send_init and cfg.init_command:
            self._send_step(RespawnStep.INIT)
        else:
            self._complete_cycle()

    def _enter_monitoring_init(self) -> None:
        self._current_step = None
        self._set_state(RespawnState.MONITORING_INIT)
        self._arm_init_monitor()

    def _arm_init_monitor(self) -> None:
        self.timers.arm(
            TIMER_INIT_MONITOR,
            self._cycle_config.init_monitor_ms,
            self._on_init_monitor_elapsed,
            purpose="watch for work started by init",
        )

    def _on_init_monitor_elapsed(self) -> None:
        if self._state != RespawnState.MONITORING_INIT or self._paused:
            return
        if self._cycle_config.kickstart_prompt:
            self._send_step(RespawnStep.KICKSTART)
        else:
            self._complete_cycle()

    def _complete_cycle(self) -> None:
        cycle = self._cycle_count
        progress = self._cycle_progress
        metrics = self._finish_cycle_metrics(CycleOutcome.SUCCESS)
        if metrics is not None and metrics.idle_detection_seconds is not None:
            self.timing.record(metrics.idle_detection_seconds, metrics.duration_seconds)
        breaker_state = self.breaker.record_cycle(cycle, progress, self._cycle_error)
        logger.info(
            f"[{self.session_id}] Respawn cycle #{cycle} completed "
            f"(progress={progress}, breaker={breaker_state.value})"
        )
        self.log_action("cycle_completed", f"#{cycle}")
        self.events.emit(RespawnEvent.CYCLE_COMPLETED, cycle=cycle)
        self._begin_idle_detection()
        self._return_to_watching(consume=True)
        if self.breaker.is_open:
            self._block(BLOCKED_CIRCUIT_BREAKER_OPEN)

    def _abort_cycle(self, error: str) -> None:
        cycle = self._cycle_count
        self._finish_cycle_metrics(CycleOutcome.ERROR, error)
        self.breaker.record_cycle(cycle, self._cycle_progress, error)
        logger.error(f"[{self.session_id}] Respawn cycle #{cycle} aborted: {error}")
        self.log_action("cycle_aborted", error)
        self._begin_idle_detection()
        self._return_to_watching(consume=True)
        if self.breaker.is_open:
            self._block(BLOCKED_CIRCUIT_BREAKER_OPEN)

    def _finish_cycle_metrics(
        self, outcome: CycleOutcome, error: Optional[str] = None
    ) -> Optional[CycleMetrics]:
        metrics = self._cycle
        if metrics is None:
            return None
        now = self.clock.now()
        metrics.completed_at = now
        metrics.duration_seconds = now - metrics.started_at
        metrics.outcome = outcome
        metrics.error_message = error
        metrics.token_count_at_end = self.token_count
        self.cycle_metrics.append(metrics)
        self._cycle = None
        return metrics

    def _return_to_watching(self, consume: bool) -> None:
        for name in STEP_TIMERS:
            self.timers.cancel(name, "returned_to_watching")
        self._current_step = None
        self._step_deadline = None
        if consume:
            self._completion_mark = self.buffer.total_appended
            self.plan_detector.reset()
        self._set_state(RespawnState.WATCHING)
        self._arm_idle_detection()

    # ------------------------------------------------------------------
    # Plumbing shared with the plan detector
    # ------------------------------------------------------------------

    def is_stale(self, request: VerifierRequest) -> bool:
        """Single staleness predicate for every async completion."""
        if request.cancelled or self._paused:
            return True
        if request.epoch != self._epoch:
            return True
        return self.last_output_time is not None and self.last_output_time > request.started_at

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.session_id}] Background task failed: {exc}", exc_info=exc)
            self.events.emit(RespawnEvent.ERROR, detail=str(exc))

    async def safe_write(self, text: str) -> bool:
        try:
            return bool(await self.session.write(text))
        except Exception as e:
            logger.error(f"[{self.session_id}] Session write raised: {e}")
            return False

    def report_error(self, detail: str) -> None:
        logger.warning(f"[{self.session_id}] {detail}")
        self.log_action("error", detail)
        self.events.emit(RespawnEvent.ERROR, detail=detail)

    def log_action(self, action: str, detail: str = "") -> None:
        self.action_log.append(
            ActionLogEntry(timestamp=self.clock.now(), action=action, detail=detail)
        )

    def _set_state(self, state: RespawnState) -> None:
        previous = self._state
        self._state = state
        self._epoch += 1
        if state != RespawnState.WATCHING:
            self.plan_detector.deactivate("state_changed")
            self.timers.cancel(TIMER_NO_OUTPUT, "state_changed")
        logger.debug(f"[{self.session_id}] {previous.value} -> {state.value}")
        self.events.emit(RespawnEvent.STATE_CHANGED, state=state)

    def _on_timer_cancelled(self, name: str, reason: str) -> None:
        self.events.emit(RespawnEvent.TIMER_CANCELLED, name=name, reason=reason)
