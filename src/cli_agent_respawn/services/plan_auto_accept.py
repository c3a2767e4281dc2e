"""Plan mode auto-accept detector.

Runs next to the respawn cycle while the controller is ``watching``: when a
plan-mode menu has been on screen for ``auto_accept_delay_ms`` without being
re-rendered over, it optionally asks the plan verifier and then presses Enter.
"""

import logging
from typing import TYPE_CHECKING

from cli_agent_respawn.constants import ENTER_KEY
from cli_agent_respawn.models.respawn import RespawnState, Verdict
from cli_agent_respawn.providers.claude_code import detect_plan_mode_ui
from cli_agent_respawn.services.verifier import VerifierAdapter, VerifierRequest
from cli_agent_respawn.utils.events import RespawnEvent

if TYPE_CHECKING:
    from cli_agent_respawn.services.respawn_controller import RespawnController

logger = logging.getLogger(__name__)

TIMER_AUTO_ACCEPT = "auto_accept"


class PlanAutoAcceptDetector:
    """Secondary detector for plan-mode menus, independent of the main cycle."""

    def __init__(self, controller: "RespawnController", verifier: VerifierAdapter):
        self.controller = controller
        self.verifier = verifier
        self._mark = 0

    @property
    def active(self) -> bool:
        c = self.controller
        return (
            c.state == RespawnState.WATCHING
            and not c.is_paused
            and c.config.auto_accept_prompts
        )

    def reset(self) -> None:
        """Forget everything seen so far; the next menu is evaluated fresh."""
        self._mark = self.controller.buffer.total_appended

    def deactivate(self, reason: str) -> None:
        self.controller.timers.cancel(TIMER_AUTO_ACCEPT, reason)

    def on_terminal_data(self, working: bool, substantial: bool) -> None:
        request = self.verifier.current_request
        if (working or substantial) and request is not None and not request.cancelled:
            reason = "working_detected" if working else "output_received"
            self.verifier.cancel(reason)
            logger.info(f"Plan check #{request.request_id} cancelled: {reason}")
        if not self.active:
            return
        timers = self.controller.timers
        if detect_plan_mode_ui(self.controller.buffer.since(self._mark)):
            if substantial or not timers.is_armed(TIMER_AUTO_ACCEPT):
                timers.arm(
                    TIMER_AUTO_ACCEPT,
                    self.controller.config.auto_accept_delay_ms,
                    self._on_settled,
                    purpose="plan mode menu settle",
                )
        else:
            timers.cancel(TIMER_AUTO_ACCEPT, "plan_ui_gone")

    def _on_settled(self) -> None:
        if not self.active:
            return
        if not detect_plan_mode_ui(self.controller.buffer.since(self._mark)):
            return

        if not self.controller.config.plan_verifier_enabled or self.verifier.is_disabled:
            logger.info("Plan mode menu detected, plan verifier off: accepting directly")
            self._accept()
            return

        rejection = self.verifier.pre_filter()
        if rejection is not None:
            logger.debug(f"Plan check skipped: {rejection}")
            if rejection == "disabled":
                self._accept()
            return

        request = self.verifier.begin(self.controller.epoch)
        self.controller.spawn(self._run_plan_check(request, self.controller.buffer.value))

    async def _run_plan_check(self, request: VerifierRequest, snapshot: str) -> None:
        result = await self.verifier.run(request, snapshot, self.controller.is_stale)
        if result is None:
            return
        self.controller.events.emit(RespawnEvent.PLAN_CHECK_COMPLETED, verdict=result.verdict)
        if result.verdict == Verdict.CONFIRMED:
            self._accept()
        elif result.verdict == Verdict.NOT_CONFIRMED:
            logger.info("Plan verifier: not a plan mode menu, cooling down")
        else:
            logger.warning(f"Plan verifier failed: {result.reason}")

    def _accept(self) -> None:
        epoch = self.controller.epoch
        self.reset()
        self.controller.spawn(self._send_enter(epoch))

    async def _send_enter(self, epoch: int) -> None:
        ok = await self.controller.safe_write(ENTER_KEY)
        if epoch != self.controller.epoch:
            return
        if not ok:
            self.controller.report_error("Failed to send plan mode auto-accept keystroke")
            return
        logger.info("Plan mode auto-accepted")
        self.controller.log_action("auto_accept", "plan mode menu accepted")
        self.controller.events.emit(RespawnEvent.AUTO_ACCEPT_SENT)
