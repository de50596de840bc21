"""
Queue entry and room data models.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
from .enums import Role, QueueStatus, RoomStatus


class QueueEntry(BaseModel):
    """A persisted record of an actor waiting to be matched."""
    id: str
    user_id: str
    role: Role
    status: QueueStatus = QueueStatus.WAITING
    created_at: Optional[datetime] = None
    added_at: int

    # Venter-only room fields
    vent_text: Optional[str] = None
    plan: Optional[str] = None
    preview_text: Optional[str] = None
    room_id: Optional[str] = None
    room_status: Optional[RoomStatus] = None
    listener_count: int = 0
    max_listeners: int = 1

    # Set by the claim transaction
    session_id: Optional[str] = None
    matched_at: Optional[datetime] = None
    listener_id: Optional[str] = None
    listener_queue_doc_id: Optional[str] = None
    venter_id: Optional[str] = None

    @classmethod
    def from_document(cls, doc_id: str, data: dict) -> "QueueEntry":
        return cls(id=doc_id, **data)

    @property
    def is_waiting(self) -> bool:
        return self.status == QueueStatus.WAITING


class RoomSummary(BaseModel):
    """Open venter room as shown to browsing listeners."""
    id: str
    room_id: str
    plan: Optional[str] = None
    preview_text: Optional[str] = None
    time_waiting_minutes: int = 0
    listener_count: int = 0
    max_listeners: int = 1
    venter_id: str
    created_at: Optional[datetime] = None


class QueueStats(BaseModel):
    """Best-effort aggregate queue counts."""
    venters_waiting: int = 0
    listeners_waiting: int = 0
    active_sessions: int = 0
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    def waiting_for(self, role: Role) -> int:
        """Number of waiting entries of the given role."""
        return self.venters_waiting if role == Role.VENTER else self.listeners_waiting
