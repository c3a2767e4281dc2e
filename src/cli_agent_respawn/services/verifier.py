"""Verifier adapter: one external oracle behind cooldown and error tracking."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from cli_agent_respawn.models.respawn import Verdict, VerifierKind, VerifierStage, VerifierStatus
from cli_agent_respawn.providers.claude_code import strip_control_sequences
from cli_agent_respawn.utils.events import EventChannel, RespawnEvent
from cli_agent_respawn.utils.timers import Clock

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_ERRORS_REASON = "max_consecutive_errors"


class Oracle(Protocol):
    """External verification oracle."""

    async def check(self, snapshot: str, kind: VerifierKind) -> Verdict: ...


@dataclass
class VerifierRequest:
    """One in-flight oracle call."""

    request_id: int
    epoch: int
    started_at: float
    cancelled: bool = False
    cancel_reason: Optional[str] = None


@dataclass
class VerifierResult:
    verdict: Verdict
    reason: Optional[str] = None


class VerifierAdapter:
    """Wraps a single oracle with the shared verifier lifecycle.

    Stage is derived, not stored: disabled wins, then an in-flight call
    (checking), then an unexpired cooldown, otherwise ready. Results are only
    applied when the caller's staleness predicate says nothing relevant
    changed while the call was in flight.
    """

    def __init__(
        self,
        name: str,
        kind: VerifierKind,
        oracle: Optional[Oracle],
        clock: Clock,
        events: EventChannel,
        *,
        enabled: bool = True,
        cooldown_ms: int = 180000,
        timeout_ms: int = 90000,
        max_consecutive_errors: int = 3,
        max_context: int = 16000,
    ):
        self.name = name
        self.kind = kind
        self.oracle = oracle
        self.clock = clock
        self.events = events
        self.enabled = enabled
        self.cooldown_ms = cooldown_ms
        self.timeout_ms = timeout_ms
        self.max_consecutive_errors = max_consecutive_errors
        self.max_context = max_context

        self.consecutive_errors = 0
        self.cooldown_until: Optional[float] = None
        self.last_error: Optional[str] = None
        self.disabled_reason: Optional[str] = None
        self.total_checks = 0
        self._current: Optional[VerifierRequest] = None
        self._next_request_id = 1

    @property
    def stage(self) -> VerifierStage:
        if self.is_disabled:
            return VerifierStage.DISABLED
        if self._current is not None:
            return VerifierStage.CHECKING
        if self.cooldown_remaining() > 0:
            return VerifierStage.COOLDOWN
        return VerifierStage.READY

    @property
    def is_disabled(self) -> bool:
        return not self.enabled or self.disabled_reason is not None

    @property
    def current_request(self) -> Optional[VerifierRequest]:
        return self._current

    def configure(
        self,
        *,
        enabled: bool,
        cooldown_ms: int,
        timeout_ms: int,
        max_consecutive_errors: int,
    ) -> None:
        self.enabled = enabled
        self.cooldown_ms = cooldown_ms
        self.timeout_ms = timeout_ms
        self.max_consecutive_errors = max_consecutive_errors

    def enable(self) -> None:
        """Explicit re-enable: clears disabled status and the error counter."""
        self.enabled = True
        self.disabled_reason = None
        self.consecutive_errors = 0
        logger.info(f"{self.name} verifier re-enabled")

    def disable(self, reason: str) -> None:
        if self.disabled_reason is not None:
            return
        self.disabled_reason = reason
        logger.warning(f"{self.name} verifier disabled: {reason}")
        self.events.emit(RespawnEvent.DISABLED, verifier=self.name, reason=reason)

    def cooldown_remaining(self) -> float:
        """Seconds left on the cooldown, 0 when not cooling down."""
        if self.cooldown_until is None:
            return 0.0
        return max(0.0, self.cooldown_until - self.clock.now())

    def start_cooldown(self) -> float:
        self.cooldown_until = self.clock.now() + self.cooldown_ms / 1000.0
        logger.info(f"{self.name} verifier cooling down for {self.cooldown_ms / 1000.0:.0f}s")
        return self.cooldown_remaining()

    def pre_filter(self) -> Optional[str]:
        """Cheap gate in front of the oracle. Returns a rejection reason or None."""
        if self._current is not None:
            return "checking"
        if self.cooldown_remaining() > 0:
            return "cooldown"
        if self.is_disabled:
            return "disabled"
        if self.consecutive_errors >= self.max_consecutive_errors:
            self.disable(MAX_CONSECUTIVE_ERRORS_REASON)
            return "disabled"
        return None

    def begin(self, epoch: int) -> VerifierRequest:
        """Register a new in-flight call; the adapter is ``checking`` until it resolves."""
        request = VerifierRequest(
            request_id=self._next_request_id, epoch=epoch, started_at=self.clock.now()
        )
        self._next_request_id += 1
        self._current = request
        self.total_checks += 1
        return request

    def cancel(self, reason: str) -> None:
        """Mark the in-flight call cancelled. The oracle keeps running; its result is dropped."""
        if self._current is not None and not self._current.cancelled:
            self._current.cancelled = True
            self._current.cancel_reason = reason
            logger.debug(f"{self.name} check #{self._current.request_id} cancelled: {reason}")

    def prepare_snapshot(self, text: str) -> str:
        return strip_control_sequences(text)[-self.max_context :]

    async def run(
        self,
        request: VerifierRequest,
        snapshot: str,
        is_stale: Callable[[VerifierRequest], bool],
    ) -> Optional[VerifierResult]:
        """Call the oracle for ``request``. Returns None when the result is discarded."""
        try:
            verdict = await asyncio.wait_for(
                self.oracle.check(self.prepare_snapshot(snapshot), self.kind),
                timeout=self.timeout_ms / 1000.0,
            )
            result = VerifierResult(verdict=Verdict(verdict))
        except asyncio.TimeoutError:
            result = VerifierResult(
                verdict=Verdict.ERROR, reason=f"timed out after {self.timeout_ms / 1000.0:.0f}s"
            )
        except Exception as e:
            result = VerifierResult(verdict=Verdict.ERROR, reason=str(e) or type(e).__name__)
        finally:
            if self._current is request:
                self._current = None

        if request.cancelled or is_stale(request):
            logger.debug(
                f"Discarding stale {self.name} result #{request.request_id} "
                f"({result.verdict.value}, cancel_reason={request.cancel_reason})"
            )
            return None

        if result.verdict == Verdict.ERROR:
            self._record_error(result.reason or "oracle returned ERROR")
        else:
            self.consecutive_errors = 0
            if result.verdict == Verdict.NOT_CONFIRMED:
                self.start_cooldown()
        return result

    def _record_error(self, reason: str) -> None:
        self.consecutive_errors += 1
        self.last_error = reason
        logger.error(
            f"{self.name} verifier error ({self.consecutive_errors}/"
            f"{self.max_consecutive_errors}): {reason}"
        )
        if self.consecutive_errors >= self.max_consecutive_errors:
            self.disable(MAX_CONSECUTIVE_ERRORS_REASON)

    def status(self) -> VerifierStatus:
        return VerifierStatus(
            name=self.name,
            stage=self.stage,
            enabled=self.enabled,
            consecutive_errors=self.consecutive_errors,
            cooldown_until=self.cooldown_until,
            cooldown_remaining_seconds=self.cooldown_remaining(),
            last_error=self.last_error,
            disabled_reason=self.disabled_reason,
            total_checks=self.total_checks,
        )
