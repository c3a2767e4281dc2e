"""Named timer registry and clock abstraction."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

from cli_agent_respawn.models.respawn import TimerInfo

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Time source and scheduler used by the controller."""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioClock:
    """Clock backed by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self.loop.call_later(max(0.0, delay), callback)


@dataclass
class _Timer:
    name: str
    purpose: str
    fires_at: float
    handle: Optional[TimerHandle] = None


class TimerRegistry:
    """Every timer a controller arms goes through here, keyed by name.

    Arming a name that is already armed replaces the old timer. ``cancel_all``
    is exhaustive because nothing else holds timer handles.
    """

    def __init__(self, clock: Clock, on_cancel: Optional[Callable[[str, str], None]] = None):
        self.clock = clock
        self._timers: Dict[str, _Timer] = {}
        self._on_cancel = on_cancel

    def arm(self, name: str, delay_ms: float, callback: Callable[[], None], purpose: str = "") -> None:
        self._drop(name)
        delay = delay_ms / 1000.0
        timer = _Timer(name=name, purpose=purpose or name, fires_at=self.clock.now() + delay)

        def fire() -> None:
            if self._timers.get(name) is not timer:
                return
            del self._timers[name]
            callback()

        timer.handle = self.clock.call_later(delay, fire)
        self._timers[name] = timer
        logger.debug(f"Armed timer {name} ({delay_ms:.0f}ms)")

    def cancel(self, name: str, reason: str = "") -> bool:
        """Cancel one timer. Returns False when it was not armed."""
        if not self._drop(name):
            return False
        logger.debug(f"Cancelled timer {name}: {reason}")
        if self._on_cancel is not None:
            self._on_cancel(name, reason)
        return True

    def cancel_all(self, reason: str = "") -> List[str]:
        names = list(self._timers)
        for name in names:
            self.cancel(name, reason)
        return names

    def is_armed(self, name: str) -> bool:
        return name in self._timers

    def remaining(self, name: str) -> Optional[float]:
        """Seconds until ``name`` fires, or None when it is not armed."""
        timer = self._timers.get(name)
        if timer is None:
            return None
        return max(0.0, timer.fires_at - self.clock.now())

    def fires_at(self, name: str) -> Optional[float]:
        timer = self._timers.get(name)
        return timer.fires_at if timer else None

    def snapshot(self) -> List[TimerInfo]:
        now = self.clock.now()
        return [
            TimerInfo(
                name=t.name,
                purpose=t.purpose,
                fires_at=t.fires_at,
                remaining_seconds=max(0.0, t.fires_at - now),
            )
            for t in sorted(self._timers.values(), key=lambda t: t.fires_at)
        ]

    def _drop(self, name: str) -> bool:
        timer = self._timers.pop(name, None)
        if timer is None:
            return False
        if timer.handle is not None:
            timer.handle.cancel()
        return True
