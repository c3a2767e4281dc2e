"""Per-controller typed event channel."""

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class RespawnEvent(str, Enum):
    """Every event a respawn controller emits, with its payload keys."""

    STATE_CHANGED = "state_changed"  # state
    STEP_SENT = "step_sent"  # step
    STEP_COMPLETED = "step_completed"  # step
    TIMER_CANCELLED = "timer_cancelled"  # name, reason
    AI_CHECK_STARTED = "ai_check_started"
    AI_CHECK_COMPLETED = "ai_check_completed"  # verdict
    AI_CHECK_FAILED = "ai_check_failed"  # reason
    AI_CHECK_COOLDOWN = "ai_check_cooldown"  # active, remaining
    PLAN_CHECK_COMPLETED = "plan_check_completed"  # verdict
    AUTO_ACCEPT_SENT = "auto_accept_sent"
    RESPAWN_BLOCKED = "respawn_blocked"  # reason
    DISABLED = "disabled"  # verifier, reason
    CYCLE_COMPLETED = "cycle_completed"  # cycle
    ERROR = "error"  # detail


Listener = Callable[..., Any]


class EventChannel:
    """Listener table owned by exactly one controller.

    Listeners are called synchronously with keyword payloads. A failing
    listener is logged and skipped; it never breaks the emitter.
    """

    def __init__(self) -> None:
        self._listeners: Dict[RespawnEvent, List[Listener]] = defaultdict(list)

    def on(self, event: RespawnEvent, listener: Listener) -> Callable[[], None]:
        """Subscribe ``listener``; returns a function that unsubscribes it."""
        event = RespawnEvent(event)
        self._listeners[event].append(listener)
        return lambda: self.off(event, listener)

    def on_any(self, listener: Callable[[RespawnEvent, Dict[str, Any]], Any]) -> Callable[[], None]:
        """Subscribe to every event; the listener gets (event, payload)."""
        unsubscribers = [
            self.on(event, lambda _e=event, **payload: listener(_e, payload)) for event in RespawnEvent
        ]

        def unsubscribe() -> None:
            for unsub in unsubscribers:
                unsub()

        return unsubscribe

    def off(self, event: RespawnEvent, listener: Listener) -> None:
        listeners = self._listeners.get(RespawnEvent(event), [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: RespawnEvent, **payload: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(**payload)
            except Exception:
                logger.exception(f"Listener for {event.value} failed")

    def clear(self) -> None:
        self._listeners.clear()
