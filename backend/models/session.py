"""
Session data models and the plan catalog.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from .enums import Role, SessionStatus, EndType, SessionPhase, ConnectionState


class Plan(BaseModel):
    """Purchasable session length."""
    name: str
    price: str
    duration_seconds: int
    description: str
    popular: bool = False


PLANS: List[Plan] = [
    Plan(
        name="10-Min Vent",
        price="$2.99",
        duration_seconds=10 * 60,
        description="Quick, focused vent session",
    ),
    Plan(
        name="20-Min Vent",
        price="$4.99",
        duration_seconds=20 * 60,
        description="Standard, comforting vent session",
        popular=True,
    ),
    Plan(
        name="30-Min Vent",
        price="$6.99",
        duration_seconds=30 * 60,
        description="Extended, deep-dive vent session",
    ),
]

DEFAULT_PLAN_NAME = "20-Min Vent"


def get_plan(name: Optional[str]) -> Optional[Plan]:
    """Look up a plan by name."""
    for plan in PLANS:
        if plan.name == name:
            return plan
    return None


def resolve_plan_duration(name: Optional[str]) -> int:
    """Allotted seconds for a plan, falling back to the default tier."""
    plan = get_plan(name) or get_plan(DEFAULT_PLAN_NAME)
    return plan.duration_seconds


class Session(BaseModel):
    """Persisted session record."""
    id: str
    venter_id: str
    listener_id: str
    vent_text: str = ""
    plan: str = DEFAULT_PLAN_NAME
    channel_name: str
    room_id: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: int = 0
    end_type: Optional[EndType] = None
    venter_queue_doc_id: Optional[str] = None
    listener_queue_doc_id: Optional[str] = None
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc_id: str, data: dict) -> "Session":
        return cls(id=doc_id, **data)


class SessionDescriptor(BaseModel):
    """What one participant needs to start a voice session after a match."""
    session_id: str
    channel_name: str
    role: Role
    plan: str
    vent_text: str = ""
    venter_id: str
    listener_id: str
    room_id: Optional[str] = None
    rtc_token: Optional[str] = None

    @property
    def is_host(self) -> bool:
        """The venter hosts the voice channel."""
        return self.role == Role.VENTER

    @property
    def user_id(self) -> str:
        return self.venter_id if self.role == Role.VENTER else self.listener_id

    @classmethod
    def for_participant(cls, session: Session, role: Role) -> "SessionDescriptor":
        return cls(
            session_id=session.id,
            channel_name=session.channel_name,
            role=role,
            plan=session.plan,
            vent_text=session.vent_text,
            venter_id=session.venter_id,
            listener_id=session.listener_id,
            room_id=session.room_id,
        )


class SessionSnapshot(BaseModel):
    """Lightweight view of a live session held by the lifecycle manager."""
    session_id: str
    role: Role
    phase: SessionPhase
    connection_state: ConnectionState
    channel_name: str
    plan: str
    duration_seconds: int
    elapsed_seconds: int
    time_remaining: int
    remote_users: List[int] = Field(default_factory=list)
    end_type: Optional[EndType] = None
    last_error: Optional[str] = None
