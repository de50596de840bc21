"""
Error taxonomy for matching, rooms, sessions and voice transport.

Repositories raise these; only the matching engine and the session lifecycle
manager decide whether to retry, surface or give up.
"""

from typing import List, Optional
from models import NextAction


class VentBoxError(Exception):
    """Base error carrying the follow-up actions offered to the caller."""

    code = "error"
    actions: List[NextAction] = [NextAction.GO_BACK]

    def __init__(self, message: str, actions: Optional[List[NextAction]] = None):
        super().__init__(message)
        self.message = message
        if actions is not None:
            self.actions = list(actions)


class ValidationError(VentBoxError):
    """Bad caller input, e.g. empty vent text or unknown plan."""
    code = "validation_error"
    actions = [NextAction.GO_BACK]


class CandidateGone(VentBoxError):
    """A queue entry read inside a claim transaction is no longer waiting."""
    code = "candidate_gone"
    actions = [NextAction.RETRY, NextAction.CANCEL]

    def __init__(self, entry_id: str, message: Optional[str] = None):
        super().__init__(message or f"Queue entry {entry_id} is no longer available")
        self.entry_id = entry_id


class RoomUnavailable(VentBoxError):
    """The room was already joined, is full, or no longer exists."""
    code = "room_unavailable"
    actions = [NextAction.PICK_ANOTHER, NextAction.GO_BACK]

    def __init__(self, room_id: str, reason: str = "not available"):
        super().__init__(f"Room {room_id} is {reason}")
        self.room_id = room_id
        self.reason = reason


class ConnectivityError(VentBoxError):
    """The document store cannot be reached."""
    code = "connectivity_error"
    actions = [NextAction.RETRY, NextAction.CANCEL]


class RtcConnectionError(VentBoxError):
    """Voice join or transport failure."""
    code = "rtc_connection_error"
    actions = [NextAction.RETRY, NextAction.CANCEL]

    def __init__(self, message: str, error_code: Optional[int] = None, transient: bool = True):
        super().__init__(message)
        self.error_code = error_code
        self.transient = transient


class RtcUnavailableError(RtcConnectionError):
    """No voice engine is available on this platform."""
    code = "rtc_unavailable"
    actions = [NextAction.GO_BACK]

    def __init__(self, message: str = "Voice engine not available"):
        super().__init__(message, transient=False)


class NotFoundError(VentBoxError):
    """The entity is already gone. Treated as success by idempotent operations."""
    code = "not_found"
    actions = [NextAction.GO_BACK]


class TransactionConflict(VentBoxError):
    """Optimistic transaction kept conflicting after the store's maximum attempts."""
    code = "transaction_conflict"
    actions = [NextAction.RETRY, NextAction.CANCEL]


class MatchTimeout(VentBoxError):
    """No counterpart was found before the search timed out."""
    code = "match_timeout"
    actions = [NextAction.RETRY, NextAction.CANCEL]
