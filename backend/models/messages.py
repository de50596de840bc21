"""
Request and response schemas for the HTTP API.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from .enums import Role, EndType, NextAction
from .queue import QueueEntry, RoomSummary
from .session import Plan


class EnqueueRequest(BaseModel):
    """Request to join the matching queue."""
    user_id: str = Field(..., min_length=1)
    role: Role
    vent_text: Optional[str] = None
    plan: Optional[str] = None


class EnqueueResponse(BaseModel):
    """Queue entry created for the caller."""
    entry: QueueEntry


class DequeueResponse(BaseModel):
    removed: bool


class CleanupRequest(BaseModel):
    max_age_ms: Optional[int] = Field(default=None, gt=0)


class CleanupResponse(BaseModel):
    removed: int


class RoomListResponse(BaseModel):
    rooms: List[RoomSummary]


class JoinRoomRequest(BaseModel):
    """Listener picking an open room."""
    listener_id: str = Field(..., min_length=1)


class EndSessionRequest(BaseModel):
    """Finalize a session record."""
    elapsed_seconds: float = Field(..., ge=0)
    end_type: EndType = EndType.MANUAL


class EndSessionResponse(BaseModel):
    session_id: str
    ended: bool


class PlanListResponse(BaseModel):
    plans: List[Plan]


class ErrorResponse(BaseModel):
    """Error body; always lists what the caller can do next."""
    error: str
    detail: str
    actions: List[NextAction] = Field(default_factory=list)
