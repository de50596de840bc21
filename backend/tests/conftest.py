"""Shared pytest fixtures for backend tests."""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from config import Settings
from core import MemoryDocumentStore, QueueRepository, RoomRepository, SessionStore
from models import ConnectionState
from services import RtcEngine, RtcEngineRegistry

EPOCH = 1_700_000_000.0

SAMPLE_VENT = "I had a rough day at work"


class FakeClock:
    """Manually advanced clock usable as both wall and monotonic time."""

    def __init__(self, start: float = EPOCH):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRtcEngine(RtcEngine):
    """
    Voice engine double.

    Every join pops the next code from ``join_errors``: None joins the channel,
    an int raises that engine error instead. With ``auto_join`` off, joins
    never complete. ``stall_join`` and ``stall_leave`` make the SDK calls
    themselves never return.
    """

    def __init__(
        self,
        join_errors: Optional[List[Optional[int]]] = None,
        auto_join: bool = True,
        stall_join: bool = False,
        stall_leave: bool = False
    ):
        super().__init__()
        self.join_errors = list(join_errors or [])
        self.auto_join = auto_join
        self.stall_join = stall_join
        self.stall_leave = stall_leave
        self.join_calls: List[tuple] = []
        self.leave_calls = 0
        self.muted: Optional[bool] = None
        self.speakerphone: Optional[bool] = None
        self.released = False

    async def join_channel(self, token, channel_name, uid):
        self.join_calls.append((token, channel_name, uid))
        if self.stall_join:
            await asyncio.Event().wait()
        if not self.auto_join:
            return
        loop = asyncio.get_running_loop()
        code = self.join_errors.pop(0) if self.join_errors else None
        if code is None:
            loop.call_soon(self.emit, "on_joined", channel_name, uid)
            loop.call_soon(self.emit, "on_connection_state_changed", ConnectionState.CONNECTED)
        else:
            loop.call_soon(self.emit, "on_error", code)

    async def leave_channel(self):
        self.leave_calls += 1
        if self.stall_leave:
            await asyncio.Event().wait()

    async def mute_local_audio(self, muted):
        self.muted = muted

    async def set_speakerphone(self, enabled):
        self.speakerphone = enabled

    async def release(self):
        self.released = True


class FakeTokenService:
    def __init__(self, token: str = "token-123", error: Optional[Exception] = None):
        self.token = token
        self.error = error
        self.requests: List[str] = []
        self.is_configured = True

    async def fetch_token(self, channel_name: str, uid: int = 0) -> str:
        self.requests.append(channel_name)
        if self.error:
            raise self.error
        return self.token


async def settle(rounds: int = 100):
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def config() -> Settings:
    """Settings tuned so retries and grace periods do not slow tests down."""
    return Settings(
        claim_retry_delay_seconds=0.0,
        rtc_reconnect_backoff_seconds=0.0,
        rtc_engine_release_grace_seconds=0.05,
        stale_cleanup_interval_seconds=0.01,
        token_service_url=None,
    )


@pytest.fixture()
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture()
def queue(store, config, clock) -> QueueRepository:
    return QueueRepository(store, config, now=clock)


@pytest.fixture()
def rooms(store, config, clock) -> RoomRepository:
    return RoomRepository(store, config, now=clock)


@pytest.fixture()
def sessions(store) -> SessionStore:
    return SessionStore(store)


@pytest.fixture()
def engine() -> FakeRtcEngine:
    return FakeRtcEngine()


@pytest.fixture()
def registry(engine, config) -> RtcEngineRegistry:
    return RtcEngineRegistry(factory=lambda: engine, grace_seconds=config.rtc_engine_release_grace_seconds)
