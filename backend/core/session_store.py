"""
Persistence of session records in the ``sessions`` collection.
"""

import math
from typing import Any, Dict, Optional

from models import (
    EndType,
    QueueStatus,
    QueueEntry,
    Session,
    SessionStatus,
    DEFAULT_PLAN_NAME,
    QUEUE_COLLECTION,
    SESSIONS_COLLECTION
)
from utils import get_logger
from .store import DocumentStore, Transaction, SERVER_TIMESTAMP

logger = get_logger(__name__)


def new_session_document(
    venter_entry: QueueEntry,
    listener_id: str,
    listener_queue_doc_id: str,
    channel_name: str
) -> Dict[str, Any]:
    """Session body written by a claim transaction."""
    return {
        "venter_id": venter_entry.user_id,
        "listener_id": listener_id,
        "vent_text": venter_entry.vent_text or "",
        "plan": venter_entry.plan or DEFAULT_PLAN_NAME,
        "channel_name": channel_name,
        "room_id": venter_entry.room_id,
        "status": SessionStatus.ACTIVE.value,
        "start_time": SERVER_TIMESTAMP,
        "end_time": None,
        "duration_seconds": 0,
        "end_type": None,
        "venter_queue_doc_id": venter_entry.id,
        "listener_queue_doc_id": listener_queue_doc_id,
        "created_at": SERVER_TIMESTAMP,
        "ended_at": None,
    }


def session_from_document(session_id: str, document: Dict[str, Any]) -> Session:
    """Model for a session document whose server timestamps are not resolved yet."""
    resolved = {key: (None if value is SERVER_TIMESTAMP else value) for key, value in document.items()}
    return Session.from_document(session_id, resolved)


def matched_entry_fields(session_id: str) -> Dict[str, Any]:
    return {
        "status": QueueStatus.MATCHED.value,
        "session_id": session_id,
        "matched_at": SERVER_TIMESTAMP,
    }


class SessionStore:
    """Reads and finalizes session records."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, session_id: str) -> Optional[Session]:
        snapshot = await self.store.get(SESSIONS_COLLECTION, session_id)
        if not snapshot.exists:
            return None
        return Session.from_document(snapshot.id, snapshot.data)

    async def end(self, session_id: str, elapsed_seconds: float, end_type: EndType) -> bool:
        """
        Mark a session ended and release both queue entries, atomically.

        Returns False without writing when the session is missing or already
        ended, so concurrent callers (timer and user) cannot double-end it.
        """
        duration = max(0, math.floor(elapsed_seconds or 0))
        end_type = EndType(end_type)

        async def finalize(txn: Transaction) -> bool:
            snapshot = await txn.get(SESSIONS_COLLECTION, session_id)
            if not snapshot.exists or snapshot.get("status") == SessionStatus.ENDED.value:
                return False

            queue_refs = [
                snapshot.get("venter_queue_doc_id"),
                snapshot.get("listener_queue_doc_id"),
            ]
            existing = []
            for entry_id in queue_refs:
                if entry_id and (await txn.get(QUEUE_COLLECTION, entry_id)).exists:
                    existing.append(entry_id)

            txn.update(SESSIONS_COLLECTION, session_id, {
                "status": SessionStatus.ENDED.value,
                "end_time": SERVER_TIMESTAMP,
                "duration_seconds": duration,
                "end_type": end_type.value,
                "ended_at": SERVER_TIMESTAMP,
            })
            for entry_id in existing:
                txn.delete(QUEUE_COLLECTION, entry_id)
            return True

        ended = await self.store.run_transaction(finalize)
        if ended:
            logger.info(f"Session {session_id} ended ({end_type.value}, {duration}s)")
        else:
            logger.debug(f"Session {session_id} already ended or missing")
        return ended
