# pydantic models for scoring and match selection
from typing import List, Literal, Optional
from pydantic import BaseModel, Field


class ScoringContext(BaseModel):
    """Optional event context passed to the scorer.

    Fields:
        event_type: Free-text event label, e.g. "Founders & Investors".
        previous_interactions: How many times this pair already met in the room.
        mutual_connections: Connections the two profiles have in common.
        time_limit_minutes: Conversation length, used by conversation starters.
        preferred_threshold: Mean score of the requester's past matches that
            turned into connections, when there are any.
    """

    event_type: Optional[str] = None
    previous_interactions: int = 0
    mutual_connections: int = 0
    time_limit_minutes: Optional[int] = None
    preferred_threshold: Optional[float] = None


class CompatibilityResult(BaseModel):
    """Bounded compatibility assessment for a pair of profiles.

    Fields:
        score: Compatibility in [0, 100].
        rationale: Short explanation of the assessment.
        strengths: Concrete reasons the pair fits.
        opportunities: What could come out of the conversation.
        conversation_starters: Suggested opening questions.
        risk_factors: Possible misalignments (reasoning service only).
        source: "local" or "reasoning", for logs and tests.
    """

    score: float = Field(ge=0.0, le=100.0)
    rationale: str = ""
    strengths: List[str] = Field(default_factory=list)
    opportunities: List[str] = Field(default_factory=list)
    conversation_starters: List[str] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)
    source: str = "local"


class LLMCompatibilityAssessment(BaseModel):
    """Structured output requested from the reasoning service.

    Validation rejects scores outside [0, 100] so a malformed answer ends up on
    the fallback path instead of being clamped silently.
    """

    compatibility_score: float = Field(ge=0.0, le=100.0, description="Compatibility score from 0-100")
    reasoning: str = Field(description="Explanation of the compatibility assessment")
    match_strengths: List[str] = Field(default_factory=list)
    potential_opportunities: List[str] = Field(default_factory=list)
    conversation_starters: List[str] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)


class ConversationStarters(BaseModel):
    """Talking points for one timed conversation."""

    ice_breakers: List[str] = Field(default_factory=list)
    deep_questions: List[str] = Field(default_factory=list)
    collaboration_topics: List[str] = Field(default_factory=list)
    follow_up_suggestions: List[str] = Field(default_factory=list)


class MatchCandidate(BaseModel):
    """Ephemeral selection result, consumed right away by the session controller.

    Fields:
        requester_id: Participant who asked for a match.
        partner_id: Selected partner.
        score: Compatibility score in [0, 100].
        initiator_id: Side that opens the media session (smaller id).
        is_repeat: True when the pair already met in this room occurrence.
    """

    requester_id: str
    partner_id: str
    score: float = Field(ge=0.0, le=100.0)
    rationale: str = ""
    strengths: List[str] = Field(default_factory=list)
    opportunities: List[str] = Field(default_factory=list)
    conversation_starters: List[str] = Field(default_factory=list)
    initiator_id: str
    is_repeat: bool = False

    @property
    def participant_ids(self):
        return self.requester_id, self.partner_id


class ConversationOutcome(BaseModel):
    """What a finished conversation teaches about future matching."""

    insights: List[str] = Field(default_factory=list)
    improvement_suggestions: List[str] = Field(default_factory=list)
    future_matching_adjustments: List[str] = Field(default_factory=list)


class NetworkingInsight(BaseModel):
    type: Literal["goal_alignment", "skill_complement", "industry_connection", "mutual_benefit"]
    description: str
    confidence: float = Field(ge=0.0, le=1.0)


class NetworkingInsights(BaseModel):
    """Per-attendee advice built from their recent matches in the room."""

    insights: List[NetworkingInsight] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
