"""Shared fakes for controller-level tests."""

import asyncio
import heapq

import pytest

from cli_agent_respawn.models.config import RespawnConfig
from cli_agent_respawn.models.respawn import Verdict
from cli_agent_respawn.services.respawn_controller import RespawnController

# Short timings so scenarios read naturally in seconds
FAST_CONFIG = {
    "completion_confirm_ms": 1000,
    "idle_timeout_ms": 200,
    "inter_step_delay_ms": 100,
    "init_monitor_ms": 500,
    "clear_fallback_ms": 10000,
    "no_output_timeout_ms": 5000,
    "auto_accept_delay_ms": 1000,
}


class FakeHandle:
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeClock:
    """Manually advanced clock; due callbacks fire inside ``advance``."""

    def __init__(self, start=1000.0):
        self._now = start
        self._queue = []
        self._seq = 0

    def now(self):
        return self._now

    def call_later(self, delay, callback):
        handle = FakeHandle()
        heapq.heappush(self._queue, (self._now + max(0.0, delay), self._seq, callback, handle))
        self._seq += 1
        return handle

    def advance(self, seconds):
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target + 1e-9:
            when, _, callback, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            callback()
        self._now = max(self._now, target)

    @property
    def pending(self):
        return sum(1 for entry in self._queue if not entry[3].cancelled)


class FakeSession:
    """Records writes; ``results`` queues return values (default True)."""

    def __init__(self):
        self.writes = []
        self.results = []

    async def write(self, text):
        self.writes.append(text)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return True


class FakeOracle:
    """Returns queued verdicts, or parks calls until ``release`` when ``hold`` is set."""

    def __init__(self, *verdicts, hold=False):
        self.verdicts = list(verdicts)
        self.hold = hold
        self.calls = []
        self.pending = []

    async def check(self, snapshot, kind):
        self.calls.append((snapshot, kind))
        if self.hold:
            future = asyncio.get_running_loop().create_future()
            self.pending.append(future)
            return await future
        verdict = self.verdicts.pop(0) if self.verdicts else Verdict.CONFIRMED
        if isinstance(verdict, Exception):
            raise verdict
        return verdict

    def release(self, verdict):
        self.pending.pop(0).set_result(verdict)


class FakeTeamWatcher:
    def __init__(self, active=False):
        self.active = active
        self.calls = []

    def has_active_teammates(self, session_id):
        self.calls.append(session_id)
        return self.active


class EventRecorder:
    def __init__(self, controller):
        self.events = []
        controller.events.on_any(lambda event, payload: self.events.append((event, payload)))

    def of(self, event):
        return [payload for e, payload in self.events if e == event]

    def names(self):
        return [e for e, _ in self.events]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def oracle_factory():
    return FakeOracle


@pytest.fixture
def team_watcher_factory():
    return FakeTeamWatcher


@pytest.fixture
def make_controller(clock, session):
    def _make(
        idle_oracle=None, plan_oracle=None, team_watcher=None, team_session_id=None, config=None, **overrides
    ):
        if config is None:
            config = RespawnConfig(**{**FAST_CONFIG, **overrides})
        return RespawnController(
            "test-session",
            session,
            config=config,
            idle_oracle=idle_oracle,
            plan_oracle=plan_oracle,
            team_watcher=team_watcher,
            team_session_id=team_session_id,
            clock=clock,
        )

    return _make


@pytest.fixture
def record():
    return EventRecorder


@pytest.fixture
def drain():
    """Let spawned verifier and write tasks run to completion."""

    async def _drain():
        for _ in range(20):
            await asyncio.sleep(0)

    return _drain
