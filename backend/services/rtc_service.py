"""
Voice transport wrapper.

The voice engine itself is an external SDK; ``RtcEngine`` is the boundary it is
adapted to. One engine instance is shared per process through
``RtcEngineRegistry``, which reference-counts holders and destroys the engine
only after the last release plus a grace delay, so a quick rejoin reuses it.
``RtcSession`` drives one participant's join/leave and exposes the connection
state machine.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

from config import settings
from core.errors import RtcConnectionError, RtcUnavailableError
from models import ConnectionState
from utils import get_logger, SessionLogger, is_valid_channel_name

logger = get_logger(__name__)

# Engine error codes that are worth a rejoin: network failure and expired token.
TRANSIENT_ERROR_CODES = {2, 17}


class RtcEventHandler:
    """Callbacks raised by the engine. Subclasses override what they need."""

    def on_joined(self, channel_name: str, uid: int):
        pass

    def on_user_joined(self, uid: int):
        pass

    def on_user_left(self, uid: int):
        pass

    def on_error(self, code: int):
        pass

    def on_connection_state_changed(self, state: ConnectionState):
        pass


class RtcEngine(ABC):
    """Adapter interface of the voice SDK engine."""

    def __init__(self):
        self._handlers: List[RtcEventHandler] = []

    def add_handler(self, handler: RtcEventHandler):
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove_handler(self, handler: RtcEventHandler):
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(self, event: str, *args):
        """Dispatch an engine event to every registered handler."""
        for handler in list(self._handlers):
            getattr(handler, event)(*args)

    @abstractmethod
    async def join_channel(self, token: Optional[str], channel_name: str, uid: int): ...

    @abstractmethod
    async def leave_channel(self): ...

    @abstractmethod
    async def mute_local_audio(self, muted: bool): ...

    @abstractmethod
    async def set_speakerphone(self, enabled: bool): ...

    @abstractmethod
    async def release(self): ...


EngineFactory = Callable[[], Union[RtcEngine, Awaitable[RtcEngine]]]


class EngineHandle:
    """One holder's reference to the shared engine. Release is idempotent."""

    def __init__(self, registry: "RtcEngineRegistry", engine: RtcEngine):
        self._registry = registry
        self.engine = engine
        self.released = False

    async def release(self):
        if self.released:
            return
        self.released = True
        await self._registry._release()


class RtcEngineRegistry:
    """Process-wide owner of the singleton voice engine."""

    def __init__(
        self,
        factory: Optional[EngineFactory] = None,
        grace_seconds: Optional[float] = None,
        create_timeout: Optional[float] = None
    ):
        self.factory = factory
        self.grace_seconds = (
            grace_seconds if grace_seconds is not None else settings.rtc_engine_release_grace_seconds
        )
        self.create_timeout = (
            create_timeout if create_timeout is not None else settings.rtc_engine_create_timeout_seconds
        )
        self._engine: Optional[RtcEngine] = None
        self._refcount = 0
        self._lock = asyncio.Lock()
        self._destroy_timer: Optional[asyncio.TimerHandle] = None
        self._destroy_task: Optional[asyncio.Task] = None

    @property
    def refcount(self) -> int:
        return self._refcount

    @property
    def has_engine(self) -> bool:
        return self._engine is not None

    @property
    def destroy_pending(self) -> bool:
        return self._destroy_timer is not None

    async def acquire(self) -> EngineHandle:
        """
        Get a handle to the engine, creating it on first use.

        Raises:
            RtcUnavailableError: no engine factory on this platform
            RtcConnectionError: engine creation timed out
        """
        if self.factory is None:
            raise RtcUnavailableError()

        async with self._lock:
            self._cancel_destroy()
            if self._destroy_task is not None and not self._destroy_task.done():
                await self._destroy_task

            if self._engine is None:
                self._engine = await self._create()
                logger.info("RTC engine created")

            self._refcount += 1
            logger.debug(f"RTC engine acquired (refs={self._refcount})")
            return EngineHandle(self, self._engine)

    async def _create(self) -> RtcEngine:
        try:
            engine = self.factory()
            if inspect.isawaitable(engine):
                engine = await asyncio.wait_for(engine, timeout=self.create_timeout)
        except asyncio.TimeoutError:
            raise RtcConnectionError(f"Engine creation timeout after {self.create_timeout:g} seconds")
        return engine

    async def _release(self):
        async with self._lock:
            self._refcount = max(0, self._refcount - 1)
            logger.debug(f"RTC engine released (refs={self._refcount})")
            if self._refcount == 0 and self._engine is not None:
                self._schedule_destroy()

    def _schedule_destroy(self):
        self._cancel_destroy()
        loop = asyncio.get_running_loop()
        self._destroy_timer = loop.call_later(self.grace_seconds, self._start_destroy)

    def _cancel_destroy(self):
        if self._destroy_timer is not None:
            self._destroy_timer.cancel()
            self._destroy_timer = None
            logger.debug("RTC engine destruction cancelled")

    def _start_destroy(self):
        self._destroy_timer = None
        self._destroy_task = asyncio.ensure_future(self._destroy())

    async def _destroy(self):
        if self._refcount > 0 or self._engine is None:
            return
        engine = self._engine
        self._engine = None
        try:
            await asyncio.wait_for(engine.leave_channel(), timeout=settings.rtc_leave_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Leave during engine destroy timed out")
        except Exception as e:
            logger.warning(f"Leave during engine destroy failed: {e}")
        await engine.release()
        logger.info("RTC engine destroyed")

    async def shutdown(self):
        """Destroy the engine now, regardless of the grace delay."""
        self._cancel_destroy()
        self._refcount = 0
        await self._destroy()


class RtcSession(RtcEventHandler):
    """
    One participant's presence in a voice channel.

    ``join`` waits for the engine's joined event (bounded by the join timeout);
    ``leave`` is idempotent. Connection state changes are reported through
    ``set_on_state_change``.
    """

    def __init__(
        self,
        registry: RtcEngineRegistry,
        token_service=None,
        uid: int = 0,
        join_timeout: Optional[float] = None,
        leave_timeout: Optional[float] = None,
        logger: Optional[SessionLogger] = None
    ):
        self.registry = registry
        self.token_service = token_service
        self.uid = uid
        self.join_timeout = join_timeout if join_timeout is not None else settings.rtc_join_timeout_seconds
        self.leave_timeout = leave_timeout if leave_timeout is not None else settings.rtc_leave_timeout_seconds
        self.logger = logger or SessionLogger("rtc")

        self.channel_name: Optional[str] = None
        self.remote_users: Set[int] = set()
        self.muted = False
        self.speaker_on = True
        self.last_error_code: Optional[int] = None

        self._state = ConnectionState.DISCONNECTED
        self._handle: Optional[EngineHandle] = None
        self._join_future: Optional[asyncio.Future] = None
        self._on_state_change: Optional[Callable[[ConnectionState, ConnectionState], Any]] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def set_on_state_change(self, callback: Callable[[ConnectionState, ConnectionState], Any]):
        """Set callback for connection state changes."""
        self._on_state_change = callback

    async def join(self, channel_name: str, token: Optional[str] = None):
        """
        Join ``channel_name``, fetching a token first when none is given.

        Raises:
            RtcUnavailableError: no voice engine on this platform
            RtcConnectionError: token, join or timeout failure
        """
        if not is_valid_channel_name(channel_name):
            raise RtcConnectionError(f"Invalid channel name: {channel_name!r}", transient=False)
        if self.is_connected and self.channel_name == channel_name:
            self.logger.debug(f"Already in channel {channel_name}")
            return

        self.channel_name = channel_name
        self._set_state(ConnectionState.CONNECTING)

        try:
            if self._handle is None:
                self._handle = await self.registry.acquire()
            engine = self._handle.engine
            engine.add_handler(self)

            if token is None and self.token_service is not None and self.token_service.is_configured:
                token = await self.token_service.fetch_token(channel_name, self.uid)

            self._join_future = asyncio.get_running_loop().create_future()
            try:
                await asyncio.wait_for(engine.join_channel(token, channel_name, self.uid), timeout=self.join_timeout)
                await asyncio.wait_for(asyncio.shield(self._join_future), timeout=self.join_timeout)
            except asyncio.TimeoutError:
                raise RtcConnectionError("Connection timeout - please try again")
        except RtcConnectionError as e:
            self.logger.error(f"Join {channel_name} failed: {e}")
            self._set_state(ConnectionState.FAILED)
            raise
        finally:
            self._join_future = None

        self.logger.info(f"Joined voice channel {channel_name}")

    async def leave(self):
        """Leave the channel and release the engine. Safe to call repeatedly."""
        handle = self._handle
        self._handle = None
        if handle is None:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        engine = handle.engine
        try:
            await asyncio.wait_for(engine.leave_channel(), timeout=self.leave_timeout)
        except asyncio.TimeoutError:
            self.logger.error(f"Leave channel timed out after {self.leave_timeout:g} seconds")
        except Exception as e:
            self.logger.warning(f"Leave channel failed: {e}")
        finally:
            engine.remove_handler(self)
            await handle.release()

        self.remote_users.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        self.logger.info(f"Left voice channel {self.channel_name}")

    async def mute_local(self, muted: bool):
        engine = self._require_engine()
        await engine.mute_local_audio(muted)
        self.muted = muted
        self.logger.debug(f"Microphone {'muted' if muted else 'unmuted'}")

    async def set_speaker(self, enabled: bool):
        engine = self._require_engine()
        await engine.set_speakerphone(enabled)
        self.speaker_on = enabled
        self.logger.debug(f"Speakerphone {'on' if enabled else 'off'}")

    def _require_engine(self) -> RtcEngine:
        if self._handle is None:
            raise RtcConnectionError("Not connected to a voice channel", transient=False)
        return self._handle.engine

    # Engine events

    def on_joined(self, channel_name: str, uid: int):
        if channel_name != self.channel_name:
            return
        if self._join_future is not None and not self._join_future.done():
            self._join_future.set_result(uid)
        self._set_state(ConnectionState.CONNECTED)

    def on_user_joined(self, uid: int):
        self.remote_users.add(uid)
        self.logger.info(f"Remote user {uid} joined")

    def on_user_left(self, uid: int):
        self.remote_users.discard(uid)
        self.logger.info(f"Remote user {uid} left")

    def on_error(self, code: int):
        self.last_error_code = code
        transient = code in TRANSIENT_ERROR_CODES
        self.logger.error(f"Voice engine error {code} ({'transient' if transient else 'fatal'})")

        error = RtcConnectionError(f"Connection error ({code})", error_code=code, transient=transient)
        if self._join_future is not None and not self._join_future.done():
            self._join_future.set_exception(error)
            return

        if self._state in (ConnectionState.CONNECTED, ConnectionState.RECONNECTING):
            self._set_state(ConnectionState.RECONNECTING if transient else ConnectionState.FAILED)

    def on_connection_state_changed(self, state: ConnectionState):
        self._set_state(ConnectionState(state))

    def _set_state(self, new_state: ConnectionState):
        if new_state == self._state:
            return

        old_state = self._state
        self._state = new_state
        self.logger.debug(f"Connection state: {old_state.value} → {new_state.value}")

        if self._on_state_change:
            result = self._on_state_change(old_state, new_state)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)


# Global registry instance
_rtc_registry: Optional[RtcEngineRegistry] = None


def get_rtc_registry() -> RtcEngineRegistry:
    """Get the global RTC engine registry."""
    global _rtc_registry
    if _rtc_registry is None:
        _rtc_registry = RtcEngineRegistry()
    return _rtc_registry


def configure_rtc_registry(factory: Optional[EngineFactory]) -> RtcEngineRegistry:
    """Install the platform's engine factory on the global registry."""
    registry = get_rtc_registry()
    registry.factory = factory
    return registry
