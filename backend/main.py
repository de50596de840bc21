"""
VentBox Matching - FastAPI Backend
Anonymous venter/listener queue, rooms and session records
"""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, get_rtc_config
from core import (
    CandidateGone,
    ConnectivityError,
    DocumentStore,
    MatchTimeout,
    NotFoundError,
    QueueRepository,
    RoomRepository,
    RoomUnavailable,
    RtcConnectionError,
    RtcUnavailableError,
    SessionStore,
    TransactionConflict,
    ValidationError,
    VentBoxError,
    get_document_store
)
from core.session_manager import SessionManager, get_session_manager
from models import (
    PLANS,
    CleanupRequest,
    CleanupResponse,
    DequeueResponse,
    EndSessionRequest,
    EndSessionResponse,
    EnqueueRequest,
    EnqueueResponse,
    ErrorResponse,
    JoinRoomRequest,
    PlanListResponse,
    QueueStats,
    Role,
    RoomListResponse,
    Session,
    SessionDescriptor
)
from services import get_rtc_registry
from utils import setup_logging, get_logger

# Initialize logging
setup_logging()
logger = get_logger(__name__)

VERSION = "1.0.0"

# HTTP status per error type; subclasses are listed before their bases.
ERROR_STATUS = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (MatchTimeout, 408),
    (RoomUnavailable, 409),
    (CandidateGone, 409),
    (TransactionConflict, 409),
    (RtcUnavailableError, 501),
    (RtcConnectionError, 502),
    (ConnectivityError, 503),
]


def status_for(error: VentBoxError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting VentBox matching backend...")

    session_manager = get_session_manager()
    await session_manager.start()
    logger.info("Session manager started")

    logger.info(f"Backend running on {settings.host}:{settings.port}")
    logger.info(f"Environment: {settings.environment.value}")

    yield

    # Shutdown
    logger.info("Shutting down VentBox matching backend...")
    await session_manager.stop()
    await get_rtc_registry().shutdown()
    logger.info("Backend shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="VentBox Matching API",
    description="Anonymous venter/listener matching and session lifecycle",
    version=VERSION,
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(VentBoxError)
async def ventbox_error_handler(request: Request, exc: VentBoxError):
    """Typed errors become a JSON body listing the next actions."""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}: {exc}")

    body = ErrorResponse(error=exc.code, detail=exc.message, actions=exc.actions)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# Dependencies (overridden in tests)

def get_store() -> DocumentStore:
    return get_document_store()


def get_queue_repository(store: DocumentStore = Depends(get_store)) -> QueueRepository:
    return QueueRepository(store)


def get_room_repository(store: DocumentStore = Depends(get_store)) -> RoomRepository:
    return RoomRepository(store)


def get_session_store(store: DocumentStore = Depends(get_store)) -> SessionStore:
    return SessionStore(store)


def get_manager() -> SessionManager:
    return get_session_manager()


# Health check endpoint
@app.get("/health")
async def health_check(
    queue: QueueRepository = Depends(get_queue_repository),
    session_manager: SessionManager = Depends(get_manager)
):
    """Health check endpoint."""
    store_reachable = await queue.check_connection()

    return {
        "status": "healthy" if store_reachable else "degraded",
        "version": VERSION,
        "environment": settings.environment.value,
        "store_reachable": store_reachable,
        "active_sessions": len(session_manager.list_sessions()),
        "rtc": get_rtc_config(),
    }


@app.get("/api/plans", response_model=PlanListResponse)
async def list_plans():
    """Session plan catalog."""
    return PlanListResponse(plans=PLANS)


# Queue endpoints
@app.post("/api/queue", response_model=EnqueueResponse, status_code=201)
async def enqueue(request: EnqueueRequest, queue: QueueRepository = Depends(get_queue_repository)):
    """
    Join the matching queue.

    Venters must include vent text and a plan; their entry also opens a room.
    """
    if request.role == Role.VENTER:
        text = queue.validate_venter_request(request.vent_text, request.plan)
        if len(text) < settings.vent_text_min_length:
            raise ValidationError(f"Please share at least {settings.vent_text_min_length} characters")

    entry = await queue.enqueue(request.user_id, request.role, request.vent_text, request.plan)
    return EnqueueResponse(entry=entry)


@app.delete("/api/queue/{entry_id}", response_model=DequeueResponse)
async def dequeue(entry_id: str, queue: QueueRepository = Depends(get_queue_repository)):
    """Leave the queue. Removing an already removed entry is not an error."""
    removed = await queue.dequeue(entry_id)
    return DequeueResponse(removed=removed)


@app.get("/api/queue/stats", response_model=QueueStats)
async def queue_stats(queue: QueueRepository = Depends(get_queue_repository)):
    """Waiting venters, waiting listeners and active sessions."""
    return await queue.get_stats()


@app.post("/api/queue/cleanup", response_model=CleanupResponse)
async def cleanup_queue(
    request: Optional[CleanupRequest] = None,
    queue: QueueRepository = Depends(get_queue_repository)
):
    """Delete stale waiting entries."""
    removed = await queue.cleanup_stale(request.max_age_ms if request else None)
    return CleanupResponse(removed=removed)


# Room endpoints
@app.get("/api/rooms", response_model=RoomListResponse)
async def list_rooms(limit: int = 20, rooms: RoomRepository = Depends(get_room_repository)):
    """Open venter rooms, oldest first."""
    return RoomListResponse(rooms=await rooms.list_open_rooms(limit))


@app.post("/api/rooms/{room_id}/join", response_model=SessionDescriptor)
async def join_room(
    room_id: str,
    request: JoinRoomRequest,
    rooms: RoomRepository = Depends(get_room_repository)
):
    """Claim an open room for a listener and create the session."""
    return await rooms.join_room(room_id, request.listener_id)


# Session endpoints
@app.get("/api/sessions/{session_id}", response_model=Session)
async def get_session(session_id: str, sessions: SessionStore = Depends(get_session_store)):
    """Persisted session record."""
    session = await sessions.get(session_id)
    if session is None:
        raise NotFoundError(f"Session {session_id} not found")
    return session


@app.post("/api/sessions/{session_id}/end", response_model=EndSessionResponse)
async def end_session(
    session_id: str,
    request: EndSessionRequest,
    session_manager: SessionManager = Depends(get_manager)
):
    """
    End a session. Ending an ended or unknown session is a no-op.

    Returns:
        Whether this request was the one that ended it
    """
    ended = await session_manager.end_session(session_id, request.elapsed_seconds, request.end_type)
    return EndSessionResponse(session_id=session_id, ended=ended)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
