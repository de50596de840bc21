"""
Enums and constants for VentBox matching backend.
"""

from enum import Enum


class Role(str, Enum):
    """Which side of a conversation an actor is on."""
    VENTER = "venter"
    LISTENER = "listener"

    @property
    def opposite(self) -> "Role":
        return Role.LISTENER if self is Role.VENTER else Role.VENTER


class QueueStatus(str, Enum):
    """Queue entry status."""
    WAITING = "waiting"
    MATCHED = "matched"


class RoomStatus(str, Enum):
    """Venter room status."""
    OPEN = "open"
    JOINED = "joined"


class SessionStatus(str, Enum):
    """Persisted session status."""
    ACTIVE = "active"
    ENDED = "ended"


class EndType(str, Enum):
    """How a session ended."""
    MANUAL = "manual-ended"
    AUTO = "auto-ended"
    ERROR = "error-ended"


class MatchingStatus(str, Enum):
    """Matching attempt state machine states."""
    IDLE = "idle"
    SEARCHING = "searching"
    FOUND = "found"
    SESSION_CREATED = "session-created"
    FAILED = "failed"


class ConnectionState(str, Enum):
    """Voice connection states surfaced to callers."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class SessionPhase(str, Enum):
    """Session lifecycle state machine states."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    ENDED = "ended"


class NextAction(str, Enum):
    """Follow-up actions offered alongside a user-visible failure."""
    RETRY = "retry"
    CANCEL = "cancel"
    GO_BACK = "go_back"
    PICK_ANOTHER = "pick_another"


# Collection names in the document store
QUEUE_COLLECTION = "queue"
SESSIONS_COLLECTION = "sessions"
