"""
Matching engine: pairs a waiting venter with a waiting listener exactly once.

Each search owns a queue entry, a live subscription to the opposite role's
waiting list and a watch on its own entry. When a candidate appears the engine
claims it in a transaction that re-reads both entries, creates the session and
marks both entries matched; a concurrent claimer sees ``CandidateGone``.
If the other side wins the race for our entry, the own-entry watch adopts the
session it created instead.

Status flow per attempt: idle -> searching -> found -> session-created | failed.
"""

import asyncio
import inspect
from functools import partial
from typing import Any, Callable, List, Optional, Tuple

from config import settings, Settings
from models import (
    MatchingStatus,
    QueueEntry,
    QueueStatus,
    Role,
    RoomStatus,
    Session,
    SessionDescriptor,
    QUEUE_COLLECTION,
    SESSIONS_COLLECTION
)
from utils import SessionLogger, generate_channel_name
from .errors import (
    CandidateGone,
    ConnectivityError,
    MatchTimeout,
    RtcConnectionError,
    ValidationError,
    VentBoxError
)
from .queue_repository import QueueRepository
from .session_store import SessionStore, new_session_document, matched_entry_fields, session_from_document
from .store import DocumentStore, Transaction, Unsubscribe


MatchCallback = Callable[[SessionDescriptor], Any]
FailureCallback = Callable[[VentBoxError], Any]


def estimate_wait_text(waiting: int, opposite_waiting: int, active_sessions: int) -> str:
    """Advisory wait estimate shown while searching."""
    if opposite_waiting > 0:
        return "< 30 seconds"
    if waiting < 3:
        return "1-2 minutes" if active_sessions > 5 else "2-4 minutes"
    if waiting < 8:
        return "3-5 minutes"
    return "5+ minutes"


class MatchingEngine:
    """
    Drives one actor's search for a counterpart.

    ``on_match`` receives the SessionDescriptor once a session exists (created
    by this engine or by the other side). ``on_failure`` receives the error when
    the attempt ends in ``failed``. Both may be coroutine functions.
    """

    def __init__(
        self,
        user_id: str,
        store: DocumentStore,
        queue: Optional[QueueRepository] = None,
        config: Optional[Settings] = None,
        token_service=None,
        channel_namer: Callable[[], str] = generate_channel_name,
        on_match: Optional[MatchCallback] = None,
        on_failure: Optional[FailureCallback] = None
    ):
        self.user_id = user_id
        self.store = store
        self.config = config or settings
        self.queue = queue or QueueRepository(store, self.config)
        self.sessions = SessionStore(store)
        self.token_service = token_service
        self.on_match = on_match
        self.on_failure = on_failure
        self.logger = SessionLogger(user_id, component="matching")

        self._channel_namer = channel_namer
        self._status = MatchingStatus.IDLE
        self._on_status_change: Optional[Callable[[MatchingStatus, MatchingStatus], None]] = None

        self.role: Optional[Role] = None
        self.entry: Optional[QueueEntry] = None
        self.descriptor: Optional[SessionDescriptor] = None
        self.estimated_wait_time: Optional[str] = None
        self.last_error: Optional[VentBoxError] = None
        self._last_request: Optional[Tuple[Role, Optional[str], Optional[str]]] = None

        # Search generation; bumped on every teardown so stale callbacks drop out.
        self._generation = 0
        self._claiming = False
        self._starting = False
        self._claim_session_id: Optional[str] = None
        self._claim_retries = 0
        self._claim_task: Optional[asyncio.Task] = None
        self._adopt_task: Optional[asyncio.Task] = None
        self._timeout_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._unwatch: Optional[Unsubscribe] = None

    @property
    def status(self) -> MatchingStatus:
        return self._status

    @property
    def is_searching(self) -> bool:
        return self._status in (MatchingStatus.SEARCHING, MatchingStatus.FOUND)

    def set_on_status_change(self, callback: Callable[[MatchingStatus, MatchingStatus], None]):
        """Set callback for status changes."""
        self._on_status_change = callback

    # Public operations

    async def start_matching(
        self,
        role: Role,
        vent_text: Optional[str] = None,
        plan: Optional[str] = None
    ) -> bool:
        """
        Begin searching for a counterpart.

        Args:
            role: Side the caller is on
            vent_text: Venters only, at least the configured minimum once trimmed
            plan: Venters only, a catalog plan name

        Returns:
            True once the entry is queued and the search is live. False when a
            search is already running or the store is unreachable (see
            ``last_error``).

        Raises:
            ValidationError: invalid role or venter input
        """
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Unknown role: {role}")

        if self.is_searching or self._starting:
            self.logger.warning(f"Start ignored: already {self._status.value}")
            return False

        if role == Role.VENTER:
            text = self.queue.validate_venter_request(vent_text, plan)
            if len(text) < self.config.vent_text_min_length:
                raise ValidationError(
                    f"Please share at least {self.config.vent_text_min_length} characters"
                )

        self._last_request = (role, vent_text, plan)

        # Held until the search is live so a concurrent start is refused.
        self._starting = True
        try:
            return await self._begin_search(role, vent_text, plan)
        finally:
            self._starting = False

    async def _begin_search(self, role: Role, vent_text: Optional[str], plan: Optional[str]) -> bool:
        start_generation = self._generation
        if not await self.queue.check_connection():
            self.last_error = ConnectivityError(
                "Unable to reach the matching service. Please check your connection."
            )
            self.logger.warning("Start blocked: store unreachable")
            return False
        if self._generation != start_generation:
            self.logger.debug("Start abandoned: stopped during connectivity check")
            return False

        self._generation += 1
        generation = self._generation
        self.role = role
        self.descriptor = None
        self.last_error = None
        self._claim_retries = 0
        self._claim_session_id = None
        self._set_status(MatchingStatus.SEARCHING)

        self.estimated_wait_time = await self.estimate_wait_time(role)
        if not self._is_live(generation):
            return False

        try:
            entry = await self.queue.enqueue(self.user_id, role, vent_text, plan)
        except ConnectivityError as e:
            self.last_error = e
            self.logger.error(f"Enqueue failed: {e}")
            self._generation += 1
            self._set_status(MatchingStatus.IDLE)
            return False

        if not self._is_live(generation):
            # Stopped while the insert was in flight.
            await self.queue.dequeue(entry.id)
            return False

        self.entry = entry
        self._unwatch = self.queue.watch_entry(entry.id, partial(self._on_own_entry, generation))
        self._unsubscribe = self.queue.subscribe_waiting(
            role.opposite,
            partial(self._on_candidates, generation),
            on_error=partial(self._on_subscription_error, generation)
        )
        self._timeout_task = asyncio.ensure_future(self._expire_search(generation))

        self.logger.info(
            f"Searching as {role.value} (entry {entry.id}, estimate {self.estimated_wait_time})"
        )
        return True

    async def stop_matching(self):
        """
        Abandon the current search. Safe from any state and idempotent.

        An in-flight claim is allowed to settle first; a committed match is
        kept and its queue entry is left to the session.
        """
        # A lost claim may chain into a fresh one, so wait until none is pending.
        while True:
            claim_task = self._claim_task
            if claim_task is None or claim_task.done() or claim_task is asyncio.current_task():
                break
            await asyncio.shield(claim_task)

        self._generation += 1
        self._teardown_listeners()

        entry = self.entry
        self.entry = None
        if entry is not None and self._status != MatchingStatus.SESSION_CREATED:
            try:
                await self.queue.dequeue(entry.id)
            except VentBoxError as e:
                self.logger.warning(f"Could not remove queue entry {entry.id}: {e}")

        self._claiming = False
        self._set_status(MatchingStatus.IDLE)
        self.logger.debug("Matching stopped")

    async def retry(self) -> bool:
        """Restart the last search with the same arguments."""
        if self._last_request is None:
            raise ValidationError("There is no search to retry")
        await self.stop_matching()
        return await self.start_matching(*self._last_request)

    async def close(self):
        """Tear down everything owned by the engine."""
        await self.stop_matching()
        if self._adopt_task is not None and not self._adopt_task.done():
            self._adopt_task.cancel()

    async def estimate_wait_time(self, role: Role) -> str:
        stats = await self.queue.get_stats()
        if stats.error:
            return "Unknown"
        return estimate_wait_text(
            waiting=stats.waiting_for(role),
            opposite_waiting=stats.waiting_for(role.opposite),
            active_sessions=stats.active_sessions
        )

    # Subscription callbacks

    def _is_live(self, generation: int) -> bool:
        return generation == self._generation and self.is_searching

    def _on_candidates(self, generation: int, entries: List[QueueEntry]):
        if not self._is_live(generation) or self._status != MatchingStatus.SEARCHING:
            return
        if self._claiming:
            self.logger.debug("Candidate update dropped: claim in flight")
            return

        own_id = self.entry.id if self.entry else None
        candidates = [
            e for e in entries
            if e.is_waiting and e.id != own_id and e.user_id != self.user_id and e.role == self.role.opposite
        ]
        if not candidates:
            return

        candidate = min(candidates, key=lambda e: e.added_at)
        self._claiming = True
        self._claim_task = asyncio.ensure_future(self._claim_and_complete(generation, candidate))

    def _on_subscription_error(self, generation: int, error: Exception):
        if not self._is_live(generation):
            return
        self.logger.error(f"Waiting list subscription failed: {error}")
        self._spawn_failure(generation, ConnectivityError(f"Lost connection to the queue: {error}"))

    def _on_own_entry(self, generation: int, entry: Optional[QueueEntry]):
        if not self._is_live(generation):
            return

        if entry is None:
            if not self._claiming:
                self.logger.warning("Own queue entry disappeared while searching")
                self._spawn_failure(generation, self._entry_removed_error())
            return

        if entry.status == QueueStatus.MATCHED and entry.session_id and entry.session_id != self._claim_session_id:
            self.logger.info(f"Entry claimed by the other side (session {entry.session_id})")
            self._adopt_task = asyncio.ensure_future(self._adopt_session(generation, entry.session_id))

    @staticmethod
    def _entry_removed_error() -> VentBoxError:
        return VentBoxError("Your place in the queue was removed", actions=MatchTimeout.actions)

    def _spawn_failure(self, generation: int, error: VentBoxError):
        asyncio.ensure_future(self._fail(generation, error))

    # Claim

    async def _claim(self, candidate: QueueEntry) -> Session:
        own_id = self.entry.id
        channel_name = self._channel_namer()
        session_id = self.store.new_id()
        self._claim_session_id = session_id

        async def claim_pair(txn: Transaction) -> Session:
            own_snapshot = await txn.get(QUEUE_COLLECTION, own_id)
            candidate_snapshot = await txn.get(QUEUE_COLLECTION, candidate.id)
            if own_snapshot.get("status") != QueueStatus.WAITING.value:
                raise CandidateGone(own_id)
            if candidate_snapshot.get("status") != QueueStatus.WAITING.value:
                raise CandidateGone(candidate.id)

            own = QueueEntry.from_document(own_snapshot.id, own_snapshot.data)
            other = QueueEntry.from_document(candidate_snapshot.id, candidate_snapshot.data)
            venter, listener = (own, other) if own.role == Role.VENTER else (other, own)
            if venter.room_status not in (None, RoomStatus.OPEN):
                raise CandidateGone(venter.id)

            document = new_session_document(venter, listener.user_id, listener.id, channel_name)
            txn.set(SESSIONS_COLLECTION, session_id, document)

            venter_update = matched_entry_fields(session_id)
            venter_update.update({
                "room_status": RoomStatus.JOINED.value,
                "listener_count": venter.listener_count + 1,
                "listener_id": listener.user_id,
                "listener_queue_doc_id": listener.id,
            })
            txn.update(QUEUE_COLLECTION, venter.id, venter_update)

            listener_update = matched_entry_fields(session_id)
            listener_update["venter_id"] = venter.user_id
            txn.update(QUEUE_COLLECTION, listener.id, listener_update)
            return session_from_document(session_id, document)

        return await self.store.run_transaction(claim_pair)

    async def _claim_and_complete(self, generation: int, candidate: QueueEntry):
        self._set_status(MatchingStatus.FOUND)
        self.logger.info(f"Claiming candidate {candidate.id} (added_at {candidate.added_at})")

        try:
            session = await self._claim(candidate)
        except CandidateGone as e:
            await self._handle_candidate_gone(generation, e)
            return
        except VentBoxError as e:
            self.logger.error(f"Claim failed: {e}")
            await self._fail(generation, e)
            return

        descriptor = SessionDescriptor.for_participant(session, self.role)
        self.logger.info(f"Session {session.id} created on channel {session.channel_name}")
        await self._complete(generation, descriptor)

    async def _handle_candidate_gone(self, generation: int, error: CandidateGone):
        if not self._is_live(generation):
            return

        if self.entry is not None and error.entry_id == self.entry.id:
            try:
                own = await self.queue.get_entry(error.entry_id)
            except ConnectivityError as e:
                await self._fail(generation, e)
                return
            if own is not None and own.status == QueueStatus.MATCHED:
                # Taken by the other side; the own-entry watch adopts the session.
                self.logger.info("Own entry no longer waiting, awaiting the session created for it")
                return
            self.logger.warning("Own queue entry removed during a claim")
            await self._fail(generation, self._entry_removed_error())
            return

        self._claim_retries += 1
        if self._claim_retries > self.config.max_claim_retries:
            self.logger.warning(f"Giving up after {self.config.max_claim_retries} lost claims")
            await self._fail(
                generation,
                CandidateGone(error.entry_id, "Your match is no longer available. Please try again.")
            )
            return

        self.logger.info(
            f"Candidate {error.entry_id} gone, looking for another "
            f"({self._claim_retries}/{self.config.max_claim_retries})"
        )
        if self.config.claim_retry_delay_seconds:
            await asyncio.sleep(self.config.claim_retry_delay_seconds)

        try:
            candidates = await self.queue.list_waiting(self.role.opposite)
        except ConnectivityError as e:
            await self._fail(generation, e)
            return
        if not self._is_live(generation):
            return

        self._claiming = False
        self._set_status(MatchingStatus.SEARCHING)
        self._on_candidates(generation, candidates)

    async def _adopt_session(self, generation: int, session_id: str):
        session = await self.sessions.get(session_id)
        if session is None:
            self.logger.warning(f"Session {session_id} for own entry not found")
            return
        await self._complete(generation, SessionDescriptor.for_participant(session, self.role))

    # Outcomes

    async def _complete(self, generation: int, descriptor: SessionDescriptor):
        if not self._is_live(generation):
            return

        self._teardown_listeners()
        self.descriptor = descriptor
        self._claiming = False
        self._set_status(MatchingStatus.SESSION_CREATED)

        descriptor.rtc_token = await self._prefetch_token(descriptor)
        await self._invoke(self.on_match, descriptor)

    async def _prefetch_token(self, descriptor: SessionDescriptor) -> Optional[str]:
        if self.token_service is None:
            return None
        try:
            return await asyncio.wait_for(
                self.token_service.fetch_token(descriptor.channel_name),
                timeout=self.config.token_request_timeout_seconds
            )
        except (RtcConnectionError, asyncio.TimeoutError) as e:
            # The RTC session fetches one lazily on join.
            self.logger.warning(f"Token prefetch failed for {descriptor.channel_name}: {e}")
            return None

    async def _fail(self, generation: int, error: VentBoxError):
        if not self._is_live(generation):
            return

        self.last_error = error
        self._generation += 1
        self._teardown_listeners()

        entry = self.entry
        self.entry = None
        if entry is not None:
            try:
                await self.queue.dequeue(entry.id)
            except VentBoxError as e:
                self.logger.warning(f"Could not remove queue entry {entry.id}: {e}")

        self._claiming = False
        self._set_status(MatchingStatus.FAILED)
        await self._invoke(self.on_failure, error)

    async def _expire_search(self, generation: int):
        await asyncio.sleep(self.config.match_timeout_seconds)
        claim_task = self._claim_task
        if claim_task is not None and not claim_task.done():
            await asyncio.shield(claim_task)
        if self._is_live(generation):
            self.logger.info(f"No match after {self.config.match_timeout_seconds}s")
            await self._fail(generation, MatchTimeout("No match found. Please try again."))

    # Helpers

    def _teardown_listeners(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
        timeout_task = self._timeout_task
        self._timeout_task = None
        if timeout_task is not None and timeout_task is not asyncio.current_task() and not timeout_task.done():
            timeout_task.cancel()

    async def _invoke(self, callback: Optional[Callable[..., Any]], *args):
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(f"Matching callback failed: {e}")

    def _set_status(self, new_status: MatchingStatus):
        if new_status == self._status:
            return

        old_status = self._status
        self._status = new_status
        self.logger.debug(f"Matching status: {old_status.value} → {new_status.value}")

        if self._on_status_change:
            self._on_status_change(old_status, new_status)
