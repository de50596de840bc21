"""
Session lifecycle manager: drives matched sessions from voice join to end.
"""

import asyncio
import inspect
import time
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from config import settings, Settings
from models import (
    ConnectionState,
    EndType,
    SessionDescriptor,
    SessionPhase,
    SessionSnapshot,
    SessionStatus,
    resolve_plan_duration,
    SESSIONS_COLLECTION
)
from services.rtc_service import RtcEngineRegistry, RtcSession, get_rtc_registry
from services.token_service import TokenService
from utils import get_logger, SessionLogger
from .errors import NotFoundError, RtcConnectionError, VentBoxError
from .queue_repository import QueueRepository
from .session_store import SessionStore
from .session_timer import SessionTimer
from .state_machine import SessionStateMachine
from .store import DocumentSnapshot, DocumentStore, Unsubscribe, get_document_store

logger = get_logger(__name__)


class LiveSession:
    """Runtime pieces of one participant's session held by the manager."""

    def __init__(
        self,
        descriptor: SessionDescriptor,
        duration: int,
        state_machine: SessionStateMachine,
        timer: SessionTimer,
        rtc: RtcSession,
        logger: SessionLogger
    ):
        self.descriptor = descriptor
        self.duration = duration
        self.state_machine = state_machine
        self.timer = timer
        self.rtc = rtc
        self.logger = logger

        # Exit flag: set by the first of timer, participant or remote end.
        self.ending = False
        self.connecting = False
        self.last_error: Optional[VentBoxError] = None
        self.reconnect_task: Optional[asyncio.Task] = None
        self.unwatch: Optional[Unsubscribe] = None
        self.finished = asyncio.Event()

    @property
    def session_id(self) -> str:
        return self.descriptor.session_id


class SessionManager:
    """
    Manages the voice sessions of this process.

    Responsibilities:
    - Start the countdown and join the voice channel for a matched session
    - Reconnect with backoff on transient transport failures
    - End sessions exactly once (auto, manual, error) and release queue entries
    - Sweep stale queue entries in the background
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        registry: Optional[RtcEngineRegistry] = None,
        token_service: Optional[TokenService] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        auto_tick: bool = True
    ):
        self.store = store or get_document_store()
        self.registry = registry or get_rtc_registry()
        self.token_service = token_service
        self.config = config or settings
        self.queue = QueueRepository(self.store, self.config)
        self.session_store = SessionStore(self.store)

        self._clock = clock
        self._auto_tick = auto_tick
        self._sessions: Dict[str, LiveSession] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._on_session_ended: Optional[Callable[[SessionSnapshot], Any]] = None

    async def start(self):
        """Start the session manager and background tasks."""
        # Start cleanup task for stale queue entries
        self._cleanup_task = asyncio.create_task(self._cleanup_stale_entries())

    async def stop(self):
        """Stop the session manager and tear down live sessions."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        # Sessions cut short by shutdown count as connection failures
        for session_id in list(self._sessions.keys()):
            await self.abandon_session(session_id)

    def set_on_session_ended(self, callback: Callable[[SessionSnapshot], Any]):
        """Set callback invoked once a session has been finalized."""
        self._on_session_ended = callback

    # Lifecycle

    async def begin_session(self, descriptor: SessionDescriptor) -> SessionSnapshot:
        """
        Start the countdown and join the voice channel for a matched session.

        A join that keeps failing leaves the session in FAILED; the caller then
        chooses ``retry_connection`` or ``abandon_session``.

        Args:
            descriptor: Participant's view of the session from the match

        Returns:
            Snapshot after the first connection attempt
        """
        existing = self._sessions.get(descriptor.session_id)
        if existing:
            return self._snapshot(existing)

        session_logger = SessionLogger(
            descriptor.session_id,
            role=descriptor.role.value,
            user_id=descriptor.user_id
        )
        duration = resolve_plan_duration(descriptor.plan)
        state_machine = SessionStateMachine(descriptor.session_id, session_logger)
        timer = SessionTimer(
            duration,
            on_expire=partial(self._on_timer_expired, descriptor.session_id),
            clock=self._clock,
            auto_tick=self._auto_tick,
            logger=session_logger
        )
        rtc = RtcSession(
            self.registry,
            token_service=self.token_service,
            join_timeout=self.config.rtc_join_timeout_seconds,
            leave_timeout=self.config.rtc_leave_timeout_seconds,
            logger=session_logger.bind(component="rtc")
        )

        live = LiveSession(descriptor, duration, state_machine, timer, rtc, session_logger)
        self._sessions[descriptor.session_id] = live
        rtc.set_on_state_change(partial(self._on_connection_state, live))
        live.unwatch = self.store.watch(
            SESSIONS_COLLECTION,
            descriptor.session_id,
            partial(self._on_session_document, live)
        )

        session_logger.info(
            f"Session starting on {descriptor.channel_name} "
            f"({descriptor.plan}, {duration}s, host={descriptor.is_host})"
        )

        timer.start()
        await self._connect_with_retry(live, token=descriptor.rtc_token)
        return self._snapshot(live)

    async def retry_connection(self, session_id: str) -> SessionSnapshot:
        """Explicit reconnect after the session reached FAILED."""
        live = self._require(session_id)
        if live.state_machine.phase != SessionPhase.FAILED:
            live.logger.debug(f"Retry ignored in phase {live.state_machine.phase.value}")
            return self._snapshot(live)

        live.state_machine.connecting()
        await self._connect_with_retry(live)
        return self._snapshot(live)

    async def abandon_session(self, session_id: str) -> bool:
        """Give up on a session: full teardown, recorded as error-ended."""
        live = self._sessions.get(session_id)
        if live is None or live.ending:
            return False
        live.ending = True
        return await self._finish(live, EndType.ERROR)

    async def request_end(self, session_id: str) -> bool:
        """
        Participant asked to leave.

        Only the first request is honoured; repeated taps while ending are ignored.
        Sessions not live in this process are not touched; ``end_session``
        takes the elapsed time for those.

        Returns:
            True if this request ended the session
        """
        live = self._sessions.get(session_id)
        if live is None:
            logger.debug(f"End request for {session_id} ignored: not live here")
            return False
        if live.ending:
            live.logger.debug("End already in progress")
            return False
        live.ending = True
        return await self._finish(live, EndType.MANUAL)

    async def end_session(
        self,
        session_id: str,
        elapsed_seconds: float,
        end_type: EndType = EndType.MANUAL
    ) -> bool:
        """
        Finalize a session record. Idempotent: ended or missing sessions are a no-op.

        A session live in this process is torn down locally as well; its own
        timer supplies the elapsed time.

        Returns:
            True if this call ended the session
        """
        live = self._sessions.get(session_id)
        if live is not None:
            if live.ending:
                return False
            live.ending = True
            return await self._finish(live, EndType(end_type))

        try:
            return await self.session_store.end(session_id, elapsed_seconds, end_type)
        except NotFoundError:
            return False

    async def set_muted(self, session_id: str, muted: bool):
        await self._require(session_id).rtc.mute_local(muted)

    async def set_speaker(self, session_id: str, enabled: bool):
        await self._require(session_id).rtc.set_speaker(enabled)

    # Queries

    def get_session(self, session_id: str) -> Optional[SessionSnapshot]:
        """Get snapshot of a live session."""
        live = self._sessions.get(session_id)
        return self._snapshot(live) if live else None

    def get_timer(self, session_id: str) -> Optional[SessionTimer]:
        live = self._sessions.get(session_id)
        return live.timer if live else None

    def list_sessions(self) -> List[SessionSnapshot]:
        """Get a list of all live sessions."""
        return [self._snapshot(live) for live in self._sessions.values()]

    # Internals

    def _require(self, session_id: str) -> LiveSession:
        live = self._sessions.get(session_id)
        if live is None:
            raise NotFoundError(f"Session {session_id} is not active here")
        return live

    async def _connect_with_retry(self, live: LiveSession, token: Optional[str] = None) -> bool:
        """Join with bounded retries; transient errors back off 2s, 4s, ..."""
        attempts = self.config.rtc_max_reconnect_attempts
        live.connecting = True
        try:
            for attempt in range(1, attempts + 1):
                if live.ending:
                    return False
                try:
                    # A retry fetches a fresh token; the first may have expired.
                    await live.rtc.join(live.descriptor.channel_name, token if attempt == 1 else None)
                except RtcConnectionError as e:
                    live.last_error = e
                    if not e.transient or attempt == attempts:
                        break
                    delay = self.config.rtc_reconnect_backoff_seconds * attempt
                    live.logger.warning(f"Join attempt {attempt}/{attempts} failed, retrying in {delay:g}s: {e}")
                    live.state_machine.reconnecting()
                    await asyncio.sleep(delay)
                    continue

                if live.ending:
                    return False
                live.last_error = None
                live.state_machine.connected()
                return True
        finally:
            live.connecting = False

        if not live.ending:
            live.state_machine.failed(str(live.last_error))
        return False

    def _on_connection_state(self, live: LiveSession, old_state: ConnectionState, new_state: ConnectionState):
        if live.ending or live.connecting:
            return

        if new_state == ConnectionState.CONNECTED:
            live.state_machine.connected()
        elif new_state == ConnectionState.RECONNECTING:
            live.state_machine.reconnecting()
        elif new_state == ConnectionState.FAILED:
            live.state_machine.reconnecting()
            live.reconnect_task = asyncio.ensure_future(self._connect_with_retry(live))

    def _on_timer_expired(self, session_id: str):
        live = self._sessions.get(session_id)
        if live is None or live.ending:
            return None
        live.ending = True
        live.logger.info("Session time is up")
        return self._finish(live, EndType.AUTO)

    def _on_session_document(self, live: LiveSession, snapshot: DocumentSnapshot):
        if live.ending:
            return
        if snapshot.exists and snapshot.get("status") != SessionStatus.ENDED.value:
            return

        end_type = EndType(snapshot.get("end_type") or EndType.MANUAL.value)
        live.logger.info(f"Session ended elsewhere ({end_type.value})")
        live.ending = True
        asyncio.ensure_future(self._finish(live, end_type))

    async def _finish(self, live: LiveSession, end_type: EndType) -> bool:
        """
        Tear down in order: stop the clock, leave voice, persist, notify.

        The caller must have set ``live.ending``.
        """
        live.state_machine.end(end_type)
        live.timer.stop()
        if live.unwatch:
            live.unwatch()
            live.unwatch = None

        reconnect_task = live.reconnect_task
        if reconnect_task is not None and reconnect_task is not asyncio.current_task() and not reconnect_task.done():
            reconnect_task.cancel()

        # Never bill past the plan allotment.
        elapsed = min(live.timer.elapsed_seconds, live.duration)

        await live.rtc.leave()

        ended = False
        try:
            ended = await self.session_store.end(live.session_id, elapsed, end_type)
        except VentBoxError as e:
            live.logger.error(f"Failed to finalize session record: {e}")

        self._sessions.pop(live.session_id, None)
        snapshot = self._snapshot(live)
        live.finished.set()
        live.logger.info(f"Session finished ({end_type.value}, {int(elapsed)}s)")

        if self._on_session_ended:
            try:
                result = self._on_session_ended(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                live.logger.error(f"Session ended callback failed: {e}")
        return ended

    def _snapshot(self, live: LiveSession) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=live.session_id,
            role=live.descriptor.role,
            phase=live.state_machine.phase,
            connection_state=live.rtc.state,
            channel_name=live.descriptor.channel_name,
            plan=live.descriptor.plan,
            duration_seconds=live.duration,
            elapsed_seconds=min(live.timer.session_time, live.duration),
            time_remaining=live.timer.time_remaining,
            remote_users=sorted(live.rtc.remote_users),
            end_type=live.state_machine.end_type,
            last_error=live.state_machine.last_error
        )

    async def _cleanup_stale_entries(self):
        """Background task to remove abandoned waiting queue entries."""
        while True:
            try:
                await asyncio.sleep(self.config.stale_cleanup_interval_seconds)
                removed = await self.queue.cleanup_stale()
                if removed:
                    logger.info(f"Stale sweep removed {removed} queue entries")

            except asyncio.CancelledError:
                break
            except VentBoxError as e:
                logger.warning(f"Error in stale queue cleanup: {e}")


# Global session manager instance
_session_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Get the global session manager instance."""
    global _session_manager
    if _session_manager is None:
        token_service = TokenService() if settings.token_service_url else None
        _session_manager = SessionManager(token_service=token_service)
    return _session_manager
