"""
Data models for VentBox matching backend.
"""

from .enums import (
    Role,
    QueueStatus,
    RoomStatus,
    SessionStatus,
    EndType,
    MatchingStatus,
    ConnectionState,
    SessionPhase,
    NextAction,
    QUEUE_COLLECTION,
    SESSIONS_COLLECTION
)

from .queue import (
    QueueEntry,
    RoomSummary,
    QueueStats
)

from .session import (
    Plan,
    PLANS,
    DEFAULT_PLAN_NAME,
    get_plan,
    resolve_plan_duration,
    Session,
    SessionDescriptor,
    SessionSnapshot
)

from .messages import (
    EnqueueRequest,
    EnqueueResponse,
    DequeueResponse,
    CleanupRequest,
    CleanupResponse,
    RoomListResponse,
    JoinRoomRequest,
    EndSessionRequest,
    EndSessionResponse,
    PlanListResponse,
    ErrorResponse
)

__all__ = [
    # Enums
    "Role",
    "QueueStatus",
    "RoomStatus",
    "SessionStatus",
    "EndType",
    "MatchingStatus",
    "ConnectionState",
    "SessionPhase",
    "NextAction",
    "QUEUE_COLLECTION",
    "SESSIONS_COLLECTION",

    # Queue
    "QueueEntry",
    "RoomSummary",
    "QueueStats",

    # Session
    "Plan",
    "PLANS",
    "DEFAULT_PLAN_NAME",
    "get_plan",
    "resolve_plan_duration",
    "Session",
    "SessionDescriptor",
    "SessionSnapshot",

    # Messages
    "EnqueueRequest",
    "EnqueueResponse",
    "DequeueResponse",
    "CleanupRequest",
    "CleanupResponse",
    "RoomListResponse",
    "JoinRoomRequest",
    "EndSessionRequest",
    "EndSessionResponse",
    "PlanListResponse",
    "ErrorResponse",
]
