"""
Core components for VentBox matching backend.

The session lifecycle manager depends on the voice services and is imported
from ``core.session_manager`` directly.
"""

from .errors import (
    VentBoxError,
    ValidationError,
    CandidateGone,
    RoomUnavailable,
    ConnectivityError,
    RtcConnectionError,
    RtcUnavailableError,
    NotFoundError,
    TransactionConflict,
    MatchTimeout
)
from .store import (
    DocumentStore,
    MemoryDocumentStore,
    DocumentSnapshot,
    Query,
    Transaction,
    SERVER_TIMESTAMP,
    get_document_store
)
from .queue_repository import QueueRepository
from .room_repository import RoomRepository
from .session_store import SessionStore
from .matching_engine import MatchingEngine, estimate_wait_text
from .session_timer import SessionTimer
from .state_machine import SessionStateMachine

__all__ = [
    # Errors
    "VentBoxError",
    "ValidationError",
    "CandidateGone",
    "RoomUnavailable",
    "ConnectivityError",
    "RtcConnectionError",
    "RtcUnavailableError",
    "NotFoundError",
    "TransactionConflict",
    "MatchTimeout",

    # Store
    "DocumentStore",
    "MemoryDocumentStore",
    "DocumentSnapshot",
    "Query",
    "Transaction",
    "SERVER_TIMESTAMP",
    "get_document_store",

    # Repositories
    "QueueRepository",
    "RoomRepository",
    "SessionStore",

    # Matching and sessions
    "MatchingEngine",
    "estimate_wait_text",
    "SessionTimer",
    "SessionStateMachine",
]
