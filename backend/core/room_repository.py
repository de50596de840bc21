"""
Room repository: venter-opened rooms that listeners browse and join.
"""

import time
from typing import Callable, List, Optional

from config import settings, Settings
from models import (
    QueueEntry,
    QueueStatus,
    Role,
    RoomStatus,
    RoomSummary,
    Session,
    SessionDescriptor,
    QUEUE_COLLECTION,
    SESSIONS_COLLECTION
)
from utils import get_logger, generate_channel_name
from .errors import RoomUnavailable, ValidationError
from .session_store import new_session_document, matched_entry_fields, session_from_document
from .store import DocumentStore, Transaction, SERVER_TIMESTAMP

logger = get_logger(__name__)


class RoomRepository:
    """Listener-initiated matching: browse open rooms, join one atomically."""

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[Settings] = None,
        now: Callable[[], float] = time.time,
        channel_namer: Callable[[], str] = generate_channel_name
    ):
        self.store = store
        self.config = config or settings
        self._now = now
        self._channel_namer = channel_namer

    def _open_rooms_query(self):
        return (
            self.store.collection(QUEUE_COLLECTION)
            .where("role", "==", Role.VENTER.value)
            .where("room_status", "==", RoomStatus.OPEN.value)
            .where("status", "==", QueueStatus.WAITING.value)
            .order_by("added_at")
        )

    async def list_open_rooms(self, limit: Optional[int] = None) -> List[RoomSummary]:
        """Open rooms, oldest first, with minutes waited so far."""
        query = self._open_rooms_query().limit(limit or self.config.open_rooms_limit)
        snapshots = await self.store.query(query)
        now_ms = int(self._now() * 1000)

        rooms = []
        for snapshot in snapshots:
            entry = QueueEntry.from_document(snapshot.id, snapshot.data)
            rooms.append(RoomSummary(
                id=entry.id,
                room_id=entry.room_id,
                plan=entry.plan,
                preview_text=entry.preview_text,
                time_waiting_minutes=max(0, (now_ms - entry.added_at) // 60000),
                listener_count=entry.listener_count,
                max_listeners=entry.max_listeners,
                venter_id=entry.user_id,
                created_at=entry.created_at,
            ))
        return rooms

    async def find_room_entry_id(self, room_id: str) -> Optional[str]:
        query = (
            self.store.collection(QUEUE_COLLECTION)
            .where("room_id", "==", room_id)
            .where("role", "==", Role.VENTER.value)
            .limit(1)
        )
        snapshots = await self.store.query(query)
        return snapshots[0].id if snapshots else None

    async def join_room(self, room_id: str, listener_id: str) -> SessionDescriptor:
        """
        Claim an open room for a listener and create the session.

        The venter entry is re-read inside the transaction; a room that is no
        longer open, no longer waiting, or already at capacity raises
        RoomUnavailable. Exactly one of several concurrent joiners succeeds.

        Returns:
            SessionDescriptor from the listener's point of view
        """
        if not room_id:
            raise ValidationError("Room id is required")
        if not listener_id:
            raise ValidationError("Listener id is required")

        venter_entry_id = await self.find_room_entry_id(room_id)
        if venter_entry_id is None:
            raise RoomUnavailable(room_id, "not available")

        channel_name = self._channel_namer()
        listener_entry_id = self.store.new_id()
        session_id = self.store.new_id()
        added_at = int(self._now() * 1000)

        async def claim_room(txn: Transaction) -> Session:
            snapshot = await txn.get(QUEUE_COLLECTION, venter_entry_id)
            if not snapshot.exists:
                raise RoomUnavailable(room_id, "not available")

            venter = QueueEntry.from_document(snapshot.id, snapshot.data)
            if venter.user_id == listener_id:
                raise ValidationError("Cannot join your own room")
            if venter.room_status != RoomStatus.OPEN or venter.status != QueueStatus.WAITING:
                raise RoomUnavailable(room_id, "already joined")
            if venter.listener_count >= venter.max_listeners:
                raise RoomUnavailable(room_id, "full")

            txn.set(QUEUE_COLLECTION, listener_entry_id, {
                "user_id": listener_id,
                "role": Role.LISTENER.value,
                "status": QueueStatus.MATCHED.value,
                "room_id": room_id,
                "venter_id": venter.user_id,
                "session_id": session_id,
                "created_at": SERVER_TIMESTAMP,
                "matched_at": SERVER_TIMESTAMP,
                "added_at": added_at,
            })

            venter_update = matched_entry_fields(session_id)
            venter_update.update({
                "room_status": RoomStatus.JOINED.value,
                "listener_count": venter.listener_count + 1,
                "listener_id": listener_id,
                "listener_queue_doc_id": listener_entry_id,
            })
            txn.update(QUEUE_COLLECTION, venter.id, venter_update)

            document = new_session_document(venter, listener_id, listener_entry_id, channel_name)
            txn.set(SESSIONS_COLLECTION, session_id, document)
            return session_from_document(session_id, document)

        session = await self.store.run_transaction(claim_room)
        logger.info(f"Listener {listener_id} joined room {room_id} (session {session_id})")
        return SessionDescriptor.for_participant(session, Role.LISTENER)
