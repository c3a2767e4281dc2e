"""Tests for the plan mode auto-accept detector."""

from cli_agent_respawn.models.respawn import RespawnState, Verdict, VerifierKind, VerifierStage
from cli_agent_respawn.utils.events import RespawnEvent

PLAN_MENU = (
    "Would you like to proceed?\n"
    "❯ 1. Yes, and auto-accept edits\n"
    "  2. Yes, and manually approve edits\n"
    "  3. No, keep planning\n"
)
SPINNER = "✽ Cooking… (esc to interrupt)\n"
# Cursor reset plus one braille frame: a working signal without visible text
SPINNER_FRAME = "\x1b[2K\x1b[1G⠙"


class TestPlanAutoAccept:
    async def test_accepts_settled_menu_without_verifier(self, make_controller, clock, session, drain, record):
        """Menu unchanged for the delay, no plan verifier -> Enter sent."""
        controller = make_controller()
        recorder = record(controller)
        controller.start()

        controller.handle_terminal_data(PLAN_MENU)
        assert controller.timers.is_armed("auto_accept")
        clock.advance(1.0)
        await drain()

        assert session.writes == ["\r"]
        assert len(recorder.of(RespawnEvent.AUTO_ACCEPT_SENT)) == 1
        assert controller.action_log[-1].action == "auto_accept"
        assert controller.state == RespawnState.WATCHING

    async def test_working_indicator_after_menu_cancels_accept(self, make_controller, clock, session, drain, record):
        """Spinner after the menu -> pending accept cancelled."""
        controller = make_controller()
        recorder = record(controller)
        controller.start()

        controller.handle_terminal_data(PLAN_MENU)
        clock.advance(0.5)
        controller.handle_terminal_data(SPINNER)
        clock.advance(2.0)
        await drain()

        assert session.writes == []
        assert recorder.of(RespawnEvent.AUTO_ACCEPT_SENT) == []
        assert {"name": "auto_accept", "reason": "plan_ui_gone"} in recorder.of(RespawnEvent.TIMER_CANCELLED)

    async def test_rerendered_menu_restarts_delay(self, make_controller, clock, session, drain):
        """A re-rendered menu restarts the settle delay."""
        controller = make_controller()
        controller.start()

        controller.handle_terminal_data(PLAN_MENU)
        clock.advance(0.8)
        controller.handle_terminal_data(PLAN_MENU)
        clock.advance(0.8)
        await drain()
        assert session.writes == []

        clock.advance(0.2)
        await drain()
        assert session.writes == ["\r"]

    async def test_plan_verifier_confirms(self, make_controller, oracle_factory, clock, session, drain, record):
        """Plan verifier CONFIRMED -> Enter sent."""
        plan_oracle = oracle_factory(Verdict.CONFIRMED)
        controller = make_controller(plan_oracle=plan_oracle)
        recorder = record(controller)
        controller.start()

        controller.handle_terminal_data(PLAN_MENU)
        clock.advance(1.0)
        await drain()

        assert len(plan_oracle.calls) == 1
        snapshot, kind = plan_oracle.calls[0]
        assert kind == VerifierKind.PLAN
        assert "keep planning" in snapshot
        assert recorder.of(RespawnEvent.PLAN_CHECK_COMPLETED) == [{"verdict": Verdict.CONFIRMED}]
        assert session.writes == ["\r"]

    async def test_plan_verifier_rejects_and_cools_down(self, make_controller, oracle_factory, clock, session, drain, record):
        """Plan verifier NOT_CONFIRMED -> no Enter, cooldown blocks the next check."""
        plan_oracle = oracle_factory(Verdict.NOT_CONFIRMED)
        controller = make_controller(plan_oracle=plan_oracle)
        recorder = record(controller)
        controller.start()

        controller.handle_terminal_data(PLAN_MENU)
        clock.advance(1.0)
        await drain()
        assert recorder.of(RespawnEvent.PLAN_CHECK_COMPLETED) == [{"verdict": Verdict.NOT_CONFIRMED}]
        assert controller.plan_verifier.stage == VerifierStage.COOLDOWN

        controller.handle_terminal_data(PLAN_MENU)
        clock.advance(1.0)
        await drain()

        assert len(plan_oracle.calls) == 1
        assert session.writes == []

    async def test_output_during_plan_check_discards_verdict(self, make_controller, oracle_factory, clock, session, drain, record):
        """New output while the plan check runs -> verdict discarded."""
        plan_oracle = oracle_factory(hold=True)
        controller = make_controller(plan_oracle=plan_oracle)
        recorder = record(controller)
        controller.start()

        controller.handle_terminal_data(PLAN_MENU)
        clock.advance(1.0)
        await drain()
        assert controller.plan_verifier.stage == VerifierStage.CHECKING

        clock.advance(0.1)
        controller.handle_terminal_data("⏺ Updated plan file\n")
        plan_oracle.release(Verdict.CONFIRMED)
        await drain()

        assert recorder.of(RespawnEvent.PLAN_CHECK_COMPLETED) == []
        assert session.writes == []

    async def test_spinner_frame_during_plan_check_cancels_it(self, make_controller, oracle_factory, clock, session, drain, record):
        """A bare spinner redraw is not substantial output but still cancels the plan check."""
        plan_oracle = oracle_factory(hold=True)
        controller = make_controller(plan_oracle=plan_oracle)
        recorder = record(controller)
        controller.start()

        controller.handle_terminal_data(PLAN_MENU)
        clock.advance(1.0)
        await drain()
        request = controller.plan_verifier.current_request
        assert request is not None

        clock.advance(0.1)
        controller.handle_terminal_data(SPINNER_FRAME)
        assert request.cancel_reason == "working_detected"
        plan_oracle.release(Verdict.CONFIRMED)
        await drain()

        assert recorder.of(RespawnEvent.PLAN_CHECK_COMPLETED) == []
        assert recorder.of(RespawnEvent.AUTO_ACCEPT_SENT) == []
        assert session.writes == []

    async def test_disabled_by_config(self, make_controller, clock, session, drain):
        """auto_accept_prompts=False -> menu ignored."""
        controller = make_controller(auto_accept_prompts=False)
        controller.start()

        controller.handle_terminal_data(PLAN_MENU)
        clock.advance(5.0)
        await drain()

        assert not controller.timers.is_armed("auto_accept")
        assert session.writes == []

    async def test_config_update_deactivates_pending_accept(self, make_controller, clock, session, drain, record):
        """Turning auto-accept off cancels a pending accept."""
        controller = make_controller()
        recorder = record(controller)
        controller.start()

        controller.handle_terminal_data(PLAN_MENU)
        controller.update_config({"auto_accept_prompts": False})
        clock.advance(2.0)
        await drain()

        assert {"name": "auto_accept", "reason": "auto_accept_disabled"} in recorder.of(
            RespawnEvent.TIMER_CANCELLED
        )
        assert session.writes == []

    async def test_menu_ignored_outside_watching(self, make_controller, oracle_factory, clock, session, drain):
        """Menus only count while the controller is watching."""
        controller = make_controller(idle_oracle=oracle_factory(hold=True))
        controller.start()
        controller.handle_terminal_data("✻ Worked for 10s\n")
        assert controller.state == RespawnState.CONFIRMING_IDLE

        controller.handle_terminal_data(PLAN_MENU)
        clock.advance(0.5)

        assert not controller.timers.is_armed("auto_accept")
        assert session.writes == []
