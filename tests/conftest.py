"""Shared fixtures: hand-driven timers, a fixed clock and a recording network"""

from datetime import datetime, timedelta
import asyncio
import copy

import pytest

from sysintel.domain.models import EventType, TelemetryEvent
from sysintel.domain.policy import PolicyEngine
from sysintel.domain.telemetry import TelemetryTransport
from sysintel.infrastructure.network import LifecycleHooks, NetworkTransport
from sysintel.infrastructure.runtime.scheduling import Clock, Scheduler, TimerHandle
from sysintel.infrastructure.security.auth import AuthSession, Identity
from sysintel.infrastructure.storage import MemoryDurableStore


class ScheduledCall(TimerHandle):
    """Timer that only runs when a test fires it"""

    def __init__(self, delay, callback):
        super().__init__()
        self.delay = delay
        self.callback = callback
        self.fired = False

    def fire(self):
        self.fired = True
        self.callback()


class FakeScheduler(Scheduler):
    """Records timers instead of arming them; spawned tasks still run on the loop"""

    def __init__(self):
        super().__init__()
        self.timers = []

    def call_later(self, delay, callback):
        call = ScheduledCall(delay, callback)
        self.timers.append(call)
        return call

    def armed(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire_all(self):
        for call in self.armed():
            call.fire()


class FixedClock(Clock):
    def __init__(self, now=None, epoch_ms=1_760_000_000_000):
        self.current = now or datetime(2026, 3, 10, 14, 0)
        self.ms = epoch_ms
        self.mono = 100.0

    def now(self):
        return self.current

    def epoch_ms(self):
        return self.ms

    def monotonic(self):
        return self.mono

    def advance(self, ms):
        self.ms += ms
        self.mono += ms / 1000
        self.current += timedelta(milliseconds=ms)


class RecordingNetwork(NetworkTransport):
    """Network double capturing every request"""

    def __init__(self):
        self.posts = []
        self.beacons = []
        self.failures = []
        self.response = {}
        self.stream_chunks = []
        self.gate = None

    async def post_json(self, path, payload):
        self.posts.append((path, copy.deepcopy(payload)))
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        return self.response

    async def stream_bytes(self, path, payload):
        self.posts.append((path, copy.deepcopy(payload)))
        for chunk in self.stream_chunks:
            yield chunk

    def send_beacon(self, path, payload):
        self.beacons.append((path, copy.deepcopy(payload)))
        return True


def make_event(index, app_id="lyrics_ai", event_type=EventType.COPY):
    return TelemetryEvent(
        app_id=app_id,
        event_type=event_type,
        label=f"e{index}",
        timestamp=1_760_000_000_000 + index,
        session_id="session-1"
    )


async def settle(rounds=5):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def local_store():
    return MemoryDurableStore()


@pytest.fixture
def memory_store():
    return MemoryDurableStore()


@pytest.fixture
def network():
    return RecordingNetwork()


@pytest.fixture
def lifecycle():
    return LifecycleHooks(online=True)


@pytest.fixture
def auth():
    session = AuthSession(admin_email="admin@example.com")
    session.sign_in(Identity(uid="user-1", email="someone@example.com", session_id="sess-1", token="tok-1"))
    return session


@pytest.fixture
def transport(network, local_store, lifecycle, scheduler, auth):
    return TelemetryTransport(network, local_store, lifecycle, scheduler, auth=auth)


@pytest.fixture
def engine(memory_store, transport, clock, auth, scheduler):
    return PolicyEngine(memory_store, transport, clock=clock, auth=auth, scheduler=scheduler)
