"""
Live matchmaking and rotation engine for speed-networking rooms.
"""

from .config import RoomContext, RoomSettings
from .data_models import (
    ConnectionRecord,
    EndReason,
    MatchRecord,
    MatchStatus,
    Participant,
    ParticipantState,
    Profile,
    Session,
    SessionStatus,
)
from .matching_models import CompatibilityResult, MatchCandidate, ScoringContext
from .outcomes import OutcomeAnalyzer
from .room import Room

__all__ = [
    "RoomContext",
    "RoomSettings",
    "ConnectionRecord",
    "EndReason",
    "MatchRecord",
    "MatchStatus",
    "Participant",
    "ParticipantState",
    "Profile",
    "Session",
    "SessionStatus",
    "CompatibilityResult",
    "MatchCandidate",
    "ScoringContext",
    "OutcomeAnalyzer",
    "Room",
]
