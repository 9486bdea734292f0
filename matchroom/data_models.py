from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pair_key(user_id1: str, user_id2: str) -> Tuple[str, str]:
    """Canonical, order-independent key for a pair of participants."""
    a, b = sorted([str(user_id1), str(user_id2)])
    return a, b


class Profile(BaseModel):
    """
    Professional profile of an attendee. Read from the profile store at room
    entry and never edited by the engine.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    first_name: str = ""
    last_name: str = ""
    job_title: str = ""
    company: str = ""
    industry: str = ""
    goals: Tuple[str, ...] = ()
    skills: Tuple[str, ...] = ()
    bio: Optional[str] = None
    experience: Optional[str] = None
    interests: Tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.user_id


class ParticipantState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    MATCHED = "matched"
    IN_CALL = "in_call"
    ENDING = "ending"
    LEFT = "left"


class Participant(BaseModel):
    """
    A profile bound to one room occurrence.

    ``match_history`` holds every partner id seen in this room occurrence and
    is only ever added to.
    """

    profile: Profile
    state: ParticipantState = ParticipantState.IDLE
    match_history: Set[str] = Field(default_factory=set)
    last_partner_id: Optional[str] = None
    joined_seq: int = 0
    joined_at: datetime = Field(default_factory=utcnow)

    @property
    def participant_id(self) -> str:
        return self.profile.user_id

    def remember_partner(self, partner_id: str) -> None:
        self.match_history.add(partner_id)
        self.last_partner_id = partner_id


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXTENDING = "extending"
    ENDING = "ending"
    ENDED = "ended"


class EndReason(str, Enum):
    TIMEOUT = "timeout"
    SKIP = "skip"
    LEAVE = "leave"


class Session(BaseModel):
    """One timed pairing between two participants."""

    session_id: str
    match_id: str
    event_id: str
    participant_ids: Tuple[str, str]
    initiator_id: str
    compatibility_score: float = 0.0
    is_repeat: bool = False
    rationale: str = ""
    conversation_starters: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    duration: int
    remaining: int
    elapsed: int = 0
    extended_by: int = 0
    can_extend: bool = True
    status: SessionStatus = SessionStatus.ACTIVE
    end_reason: Optional[EndReason] = None
    ended_by: Optional[str] = None
    media_connected: bool = False
    connection_requests: Set[str] = Field(default_factory=set)
    pending_extension: Set[str] = Field(default_factory=set)
    warnings: List[str] = Field(default_factory=list)

    def partner_of(self, participant_id: str) -> str:
        a, b = self.participant_ids
        if participant_id == a:
            return b
        if participant_id == b:
            return a
        raise KeyError(f"{participant_id} is not part of session {self.session_id}")

    @property
    def is_live(self) -> bool:
        return self.status in (SessionStatus.ACTIVE, SessionStatus.EXTENDING)


class MatchStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ABANDONED = "abandoned"


END_REASON_STATUS = {
    EndReason.TIMEOUT: MatchStatus.COMPLETED,
    EndReason.SKIP: MatchStatus.SKIPPED,
    EndReason.LEAVE: MatchStatus.ABANDONED,
}


class SessionSummary(BaseModel):
    """What the session controller hands to the outcome recorder."""

    match_id: str
    event_id: str
    participant_ids: Tuple[str, str]
    compatibility_score: float
    started_at: datetime
    ended_at: datetime
    duration_seconds: int
    end_reason: EndReason
    connection_requests: Set[str] = Field(default_factory=set)

    @classmethod
    def from_session(cls, session: Session) -> "SessionSummary":
        return cls(
            match_id=session.match_id,
            event_id=session.event_id,
            participant_ids=session.participant_ids,
            compatibility_score=session.compatibility_score,
            started_at=session.started_at,
            ended_at=session.ended_at or utcnow(),
            duration_seconds=session.elapsed,
            end_reason=session.end_reason or EndReason.TIMEOUT,
            connection_requests=set(session.connection_requests),
        )

    @property
    def idempotency_key(self) -> Tuple[str, str, str, str]:
        a, b = pair_key(*self.participant_ids)
        return self.event_id, a, b, self.started_at.isoformat()


class MatchRecord(BaseModel):
    """Persisted pairing outcome. Only the connection flags change after creation."""

    match_id: str
    event_id: str
    user1_id: str
    user2_id: str
    compatibility_score: float = Field(ge=0.0, le=100.0)
    status: MatchStatus
    started_at: datetime
    ended_at: datetime
    duration_seconds: int = 0
    connection_requested: bool = False
    connection_approved: bool = False
    requested_by: Set[str] = Field(default_factory=set)

    @property
    def pair(self) -> Tuple[str, str]:
        return self.user1_id, self.user2_id


class ConnectionRecord(BaseModel):
    """Two participants opted to stay in touch beyond the session."""

    connection_id: str
    event_id: str
    match_id: str
    user1_id: str
    user2_id: str
    follow_up_scheduled: bool = False
    created_at: datetime = Field(default_factory=utcnow)
