"""
Queue repository: owns the ``queue`` collection.
"""

import asyncio
import time
from typing import Callable, List, Optional

from config import settings, Settings
from models import (
    QueueEntry,
    QueueStats,
    QueueStatus,
    Role,
    RoomStatus,
    SessionStatus,
    get_plan,
    QUEUE_COLLECTION,
    SESSIONS_COLLECTION
)
from utils import get_logger, make_preview_text, generate_room_id, MonotonicMillis
from .errors import ValidationError
from .store import DocumentStore, DocumentSnapshot, Query, Unsubscribe, SERVER_TIMESTAMP

logger = get_logger(__name__)


class QueueRepository:
    """
    Enqueue, dequeue, waiting-list reads and maintenance of queue entries.

    The repository never retries business operations; callers decide.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[Settings] = None,
        now: Callable[[], float] = time.time
    ):
        self.store = store
        self.config = config or settings
        self._now = now
        self._added_at = MonotonicMillis(now)

    def now_ms(self) -> int:
        return int(self._now() * 1000)

    def validate_venter_request(self, vent_text: Optional[str], plan: Optional[str]) -> str:
        """Return the trimmed vent text or raise ValidationError."""
        if not vent_text or not vent_text.strip():
            raise ValidationError("Venter must provide vent text")
        text = vent_text.strip()
        if len(text) > self.config.vent_text_max_length:
            raise ValidationError(
                f"Vent text must be at most {self.config.vent_text_max_length} characters"
            )
        if not plan:
            raise ValidationError("Venter must select a plan")
        if get_plan(plan) is None:
            raise ValidationError(f"Unknown plan: {plan}")
        return text

    async def enqueue(
        self,
        user_id: str,
        role: Role,
        vent_text: Optional[str] = None,
        plan: Optional[str] = None
    ) -> QueueEntry:
        """
        Add a waiting entry for the user.

        Venter entries also open a room that listeners can browse and join.

        Raises:
            ValidationError: venter without vent text or with a missing/unknown plan
        """
        if not user_id:
            raise ValidationError("User id is required")
        role = Role(role)

        data = {
            "user_id": user_id,
            "role": role.value,
            "status": QueueStatus.WAITING.value,
            "created_at": SERVER_TIMESTAMP,
            "added_at": self._added_at.next(),
        }

        if role == Role.VENTER:
            text = self.validate_venter_request(vent_text, plan)
            data.update({
                "vent_text": text,
                "plan": plan,
                "preview_text": make_preview_text(text, self.config.preview_length),
                "room_id": generate_room_id(self._now),
                "room_status": RoomStatus.OPEN.value,
                "listener_count": 0,
                "max_listeners": self.config.max_listeners,
            })

        entry_id = await self.store.add(QUEUE_COLLECTION, data)
        logger.info(f"Queue entry {entry_id} created for {role.value} {user_id}")

        entry = await self.get_entry(entry_id)
        if entry is None:
            # Removed between insert and read-back (e.g. a concurrent cleanup).
            data["created_at"] = None
            return QueueEntry.from_document(entry_id, data)
        return entry

    async def dequeue(self, entry_id: Optional[str]) -> bool:
        """Delete an entry. Missing entries are not an error."""
        if not entry_id:
            return False
        removed = await self.store.delete(QUEUE_COLLECTION, entry_id)
        if removed:
            logger.info(f"Queue entry {entry_id} removed")
        else:
            logger.debug(f"Queue entry {entry_id} already removed")
        return removed

    async def get_entry(self, entry_id: str) -> Optional[QueueEntry]:
        snapshot = await self.store.get(QUEUE_COLLECTION, entry_id)
        if not snapshot.exists:
            return None
        return QueueEntry.from_document(snapshot.id, snapshot.data)

    def waiting_query(self, role: Role, limit: Optional[int] = None) -> Query:
        query = (
            self.store.collection(QUEUE_COLLECTION)
            .where("role", "==", Role(role).value)
            .where("status", "==", QueueStatus.WAITING.value)
            .order_by("added_at")
        )
        if limit is not None:
            query = query.limit(limit)
        return query

    async def list_waiting(self, role: Role, limit: Optional[int] = None) -> List[QueueEntry]:
        """One-shot FIFO snapshot of waiting entries of a role."""
        snapshots = await self.store.query(self.waiting_query(role, limit or self.config.waiting_list_limit))
        return [QueueEntry.from_document(s.id, s.data) for s in snapshots]

    def subscribe_waiting(
        self,
        role: Role,
        callback: Callable[[List[QueueEntry]], None],
        limit: Optional[int] = None,
        on_error: Optional[Callable[[Exception], None]] = None
    ) -> Unsubscribe:
        """Live FIFO view of waiting entries of a role. Returns the unsubscribe function."""

        def on_snapshot(snapshots: List[DocumentSnapshot]) -> None:
            callback([QueueEntry.from_document(s.id, s.data) for s in snapshots])

        query = self.waiting_query(role, limit or self.config.waiting_list_limit)
        return self.store.subscribe(query, on_snapshot, on_error=on_error)

    def watch_entry(
        self,
        entry_id: str,
        callback: Callable[[Optional[QueueEntry]], None]
    ) -> Unsubscribe:
        """Observe a single entry; the callback receives None once it is deleted."""

        def on_snapshot(snapshot: DocumentSnapshot) -> None:
            if snapshot.exists:
                callback(QueueEntry.from_document(snapshot.id, snapshot.data))
            else:
                callback(None)

        return self.store.watch(QUEUE_COLLECTION, entry_id, on_snapshot)

    async def get_stats(self) -> QueueStats:
        """
        Waiting venters, waiting listeners and active sessions.

        Best-effort: any failure yields zeroed stats with ``error`` set.
        """
        queries = [
            self.waiting_query(Role.VENTER),
            self.waiting_query(Role.LISTENER),
            self.store.collection(SESSIONS_COLLECTION).where("status", "==", SessionStatus.ACTIVE.value),
        ]
        try:
            venters, listeners, active = await asyncio.gather(
                *(self.store.count(query) for query in queries)
            )
        except Exception as e:
            logger.warning(f"Queue stats unavailable: {e}")
            return QueueStats(error=str(e))

        return QueueStats(
            venters_waiting=venters,
            listeners_waiting=listeners,
            active_sessions=active
        )

    async def cleanup_stale(self, max_age_ms: Optional[int] = None) -> int:
        """Delete waiting entries older than the threshold in a single batch."""
        max_age = max_age_ms if max_age_ms is not None else self.config.stale_entry_max_age_ms
        cutoff = self.now_ms() - max_age
        query = (
            self.store.collection(QUEUE_COLLECTION)
            .where("status", "==", QueueStatus.WAITING.value)
            .where("added_at", "<", cutoff)
        )
        stale = await self.store.query(query)
        if not stale:
            return 0

        batch = self.store.batch()
        for snapshot in stale:
            batch.delete(QUEUE_COLLECTION, snapshot.id)
        await batch.commit()

        logger.info(f"Removed {len(stale)} stale queue entries older than {max_age}ms")
        return len(stale)

    async def check_connection(self) -> bool:
        """Whether the store answered a probe within the connectivity timeout."""
        try:
            await asyncio.wait_for(self.store.ping(), timeout=self.config.connectivity_timeout_seconds)
            return True
        except Exception as e:
            logger.warning(f"Connectivity check failed: {e}")
            return False
