"""
Compatibility scoring for a pair of profiles.

There is one scorer interface with two implementations:

- ``LocalCompatibilityScorer``: deterministic, additive and symmetric. Always
  available, used on its own in tests and offline simulations.
- ``ReasoningCompatibilityScorer``: asks a reasoning service (OpenAI Responses
  API with structured outputs) for a full assessment.

``FallbackScorer`` composes the two: the reasoning path runs under a hard
timeout and any failure (timeout, network error, malformed output) silently
degrades to the local result. Scoring never blocks matching and never touches
participant or session state.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List, Optional, Protocol, Sequence, Type, TypeVar, runtime_checkable

from pydantic import BaseModel

from .config import DEFAULT_OPENAI_MODEL, DEFAULT_SCORER_TIMEOUT, RoomSettings
from .data_models import Profile
from .matching_models import (
    CompatibilityResult,
    ConversationStarters,
    LLMCompatibilityAssessment,
    ScoringContext,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

GOAL_SKILL_POINTS = 20
SAME_INDUSTRY_POINTS = 15
PARTNERSHIP_POINTS = 25
MAX_SCORE = 100
MIN_SCORE = 0


@runtime_checkable
class CompatibilityScorer(Protocol):
    async def score(
        self,
        profile_a: Profile,
        profile_b: Profile,
        context: Optional[ScoringContext] = None,
    ) -> CompatibilityResult:
        ...


@runtime_checkable
class ReasoningService(Protocol):
    """External reasoning collaborator: prompt in, validated structured result out."""

    async def evaluate(self, prompt: str, schema: Type[T]) -> T:
        ...


def _clamp(value: float, low: float = MIN_SCORE, high: float = MAX_SCORE) -> float:
    return float(min(max(value, low), high))


def _overlaps(goal: str, skill: str) -> bool:
    g = goal.strip().lower()
    s = skill.strip().lower()
    if not g or not s:
        return False
    return g in s or s in g


def _goal_skill_hits(seeker: Profile, expert: Profile) -> List[str]:
    hits = []
    for goal in seeker.goals:
        for skill in expert.skills:
            if _overlaps(goal, skill):
                hits.append(
                    f"{expert.display_name}'s {skill} expertise aligns with "
                    f"{seeker.display_name}'s {goal} goal"
                )
    return hits


def _wants_partnership(profile: Profile) -> bool:
    return any("partnership" in g.lower() for g in profile.goals)


def fallback_conversation_starters(partner: Profile) -> List[str]:
    topic = partner.goals[0] if partner.goals else "your current goals"
    company = partner.company or "your company"
    industry = partner.industry or "your industry"
    return [
        f"What's driving your interest in {topic}?",
        f"How has your experience at {company} shaped your perspective?",
        f"What opportunities are you seeing in {industry}?",
    ]


class LocalCompatibilityScorer:
    """Deterministic additive scorer.

    +20 per (goal, skill) pair where one string is a case-insensitive substring
    of the other, counted in both directions; +15 for the same industry; +25
    when both sides list a partnership goal; clamped to [0, 100].
    """

    source = "local"

    def compute(self, profile_a: Profile, profile_b: Profile) -> CompatibilityResult:
        strengths = _goal_skill_hits(profile_a, profile_b) + _goal_skill_hits(profile_b, profile_a)
        score = GOAL_SKILL_POINTS * len(strengths)
        opportunities: List[str] = []

        industry_a = profile_a.industry.strip().lower()
        if industry_a and industry_a == profile_b.industry.strip().lower():
            score += SAME_INDUSTRY_POINTS
            strengths.append("Same industry background")

        if _wants_partnership(profile_a) and _wants_partnership(profile_b):
            score += PARTNERSHIP_POINTS
            opportunities.append("Business partnership opportunities")

        return CompatibilityResult(
            score=_clamp(score),
            rationale="Basic compatibility assessment based on goals, skills, and industry alignment",
            strengths=strengths,
            opportunities=opportunities,
            conversation_starters=fallback_conversation_starters(profile_b),
            source=self.source,
        )

    async def score(
        self,
        profile_a: Profile,
        profile_b: Profile,
        context: Optional[ScoringContext] = None,
    ) -> CompatibilityResult:
        return self.compute(profile_a, profile_b)


def _describe(label: str, profile: Profile) -> str:
    lines = [
        f"{label}: {profile.display_name}",
        f"- Role: {profile.job_title or 'n/a'} at {profile.company or 'n/a'}",
        f"- Industry: {profile.industry or 'n/a'}",
        f"- Goals: {', '.join(profile.goals) or 'n/a'}",
        f"- Skills: {', '.join(profile.skills) or 'n/a'}",
    ]
    if profile.bio:
        lines.append(f"- Bio: {profile.bio}")
    if profile.experience:
        lines.append(f"- Experience: {profile.experience}")
    return "\n".join(lines)


def build_matching_prompt(
    profile_a: Profile,
    profile_b: Profile,
    context: Optional[ScoringContext] = None,
) -> str:
    context_lines = []
    if context is not None:
        if context.event_type:
            context_lines.append(f"- Event Type: {context.event_type}")
        if context.previous_interactions:
            context_lines.append(f"- Previous Interactions: {context.previous_interactions}")
        if context.mutual_connections:
            context_lines.append(f"- Mutual Connections: {context.mutual_connections}")
        if context.preferred_threshold is not None:
            context_lines.append(
                f"- Past matches that became connections averaged {context.preferred_threshold:.0f}/100"
            )
    return "\n\n".join(
        [
            "You are an expert networking consultant analyzing the compatibility between "
            "two professionals for a speed-networking event.",
            _describe("PERSON 1", profile_a),
            _describe("PERSON 2", profile_b),
            "CONTEXT:\n" + ("\n".join(context_lines) or "- none"),
            "Analyze their compatibility for networking, considering goal alignment and mutual "
            "benefit, skill complementarity, industry synergies, professional development and "
            "business partnership possibilities. Return a compatibility score from 0 to 100 "
            "with specific, actionable strengths, opportunities and conversation starters.",
        ]
    )


class OpenAIReasoningService:
    """Reasoning service backed by the OpenAI Responses API with structured outputs."""

    SYSTEM_PROMPT = (
        "You are a careful networking assistant for a live speed-networking event. "
        "Base every statement on concrete profile evidence: goals, skills, roles, company and industry. "
        "Do not invent personal names or use placeholder tokens. "
        "Respond ONLY with the structured fields defined by the schema."
    )

    def __init__(self, model: Optional[str] = None, client: Any = None, max_attempts: int = 2):
        self.model = model or DEFAULT_OPENAI_MODEL
        self.max_attempts = max_attempts
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI()
        return self._client

    async def evaluate(self, prompt: str, schema: Type[T]) -> T:
        messages: Any = [
            {"role": "system", "content": self.SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                parsed = await self.client.responses.parse(  # type: ignore[call-arg]
                    model=str(self.model),
                    input=messages,
                    text_format=schema,  # type: ignore[arg-type]
                )
                if getattr(parsed, "output_parsed", None) is None:
                    raise ValueError("Structured parse returned None")
                return schema.model_validate(parsed.output_parsed)
            except Exception as e:
                last_error = e
                if attempt < self.max_attempts:
                    await asyncio.sleep(0.8 * attempt)
        raise RuntimeError(f"Reasoning service failed after {self.max_attempts} attempts") from last_error


class ReasoningCompatibilityScorer:
    """Primary scorer: delegates the assessment to a reasoning service."""

    source = "reasoning"

    def __init__(self, reasoning: ReasoningService):
        self.reasoning = reasoning

    async def score(
        self,
        profile_a: Profile,
        profile_b: Profile,
        context: Optional[ScoringContext] = None,
    ) -> CompatibilityResult:
        prompt = build_matching_prompt(profile_a, profile_b, context)
        raw = await self.reasoning.evaluate(prompt, LLMCompatibilityAssessment)
        # re-validate: fakes and proxies may hand back plain dicts
        assessment = LLMCompatibilityAssessment.model_validate(
            raw.model_dump() if isinstance(raw, BaseModel) else raw
        )
        return CompatibilityResult(
            score=assessment.compatibility_score,
            rationale=assessment.reasoning,
            strengths=assessment.match_strengths,
            opportunities=assessment.potential_opportunities,
            conversation_starters=assessment.conversation_starters,
            risk_factors=assessment.risk_factors,
            source=self.source,
        )


class FallbackScorer:
    """Run ``primary`` under a timeout; on any failure return ``fallback``'s result."""

    def __init__(
        self,
        primary: CompatibilityScorer,
        fallback: Optional[CompatibilityScorer] = None,
        timeout: float = DEFAULT_SCORER_TIMEOUT,
    ):
        self.primary = primary
        self.fallback = fallback or LocalCompatibilityScorer()
        self.timeout = timeout

    async def score(
        self,
        profile_a: Profile,
        profile_b: Profile,
        context: Optional[ScoringContext] = None,
    ) -> CompatibilityResult:
        try:
            return await asyncio.wait_for(
                self.primary.score(profile_a, profile_b, context), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Scoring %s/%s timed out after %.1fs; using fallback",
                profile_a.user_id, profile_b.user_id, self.timeout,
            )
        except Exception as e:
            logger.warning(
                "Scoring %s/%s failed (%s); using fallback",
                profile_a.user_id, profile_b.user_id, e,
            )
        return await self.fallback.score(profile_a, profile_b, context)


def build_scorer(settings: RoomSettings, reasoning: Optional[ReasoningService] = None) -> CompatibilityScorer:
    """Scorer for a room: local only, or reasoning-first with local fallback."""
    if reasoning is None:
        return LocalCompatibilityScorer()
    return FallbackScorer(
        ReasoningCompatibilityScorer(reasoning),
        LocalCompatibilityScorer(),
        timeout=settings.scorer_timeout,
    )


DEFAULT_STARTERS = ConversationStarters(
    ice_breakers=[
        "What brought you to this networking event?",
        "What's the most exciting project you're working on right now?",
        "How did you get started in your industry?",
    ],
    deep_questions=[
        "What's your biggest challenge in achieving your current goals?",
        "What kind of partnerships or collaborations are you looking for?",
        "What trends are you seeing in your industry?",
    ],
    collaboration_topics=[
        "Potential synergies between your companies",
        "Shared industry challenges and solutions",
        "Mutual professional development opportunities",
    ],
    follow_up_suggestions=[
        "Schedule a coffee chat to explore collaboration",
        "Share relevant industry resources",
        "Make introductions to mutual connections",
    ],
)


class ConversationStarterGenerator:
    """Talking points for a matched pair, with a static fallback."""

    def __init__(self, reasoning: Optional[ReasoningService] = None, timeout: float = DEFAULT_SCORER_TIMEOUT):
        self.reasoning = reasoning
        self.timeout = timeout

    @staticmethod
    def build_prompt(
        profile_a: Profile,
        profile_b: Profile,
        context: ScoringContext,
        previous_topics: Sequence[str] = (),
    ) -> str:
        minutes = context.time_limit_minutes or 5
        parts = [
            f"Generate conversation starters for a {minutes}-minute networking conversation:",
            _describe("PERSON 1", profile_a),
            _describe("PERSON 2", profile_b),
            f"EVENT: {context.event_type or 'speed networking'}",
        ]
        if previous_topics:
            parts.append(f"PREVIOUS TOPICS: {', '.join(previous_topics)}")
        parts.append("Create conversation starters that maximize value for both parties.")
        return "\n\n".join(parts)

    async def generate(
        self,
        profile_a: Profile,
        profile_b: Profile,
        context: Optional[ScoringContext] = None,
        previous_topics: Sequence[str] = (),
    ) -> ConversationStarters:
        if self.reasoning is None:
            return DEFAULT_STARTERS.model_copy(deep=True)
        prompt = self.build_prompt(profile_a, profile_b, context or ScoringContext(), previous_topics)
        try:
            result = await asyncio.wait_for(
                self.reasoning.evaluate(prompt, ConversationStarters), timeout=self.timeout
            )
            return ConversationStarters.model_validate(
                result.model_dump() if isinstance(result, BaseModel) else result
            )
        except Exception as e:
            logger.warning("Conversation starters unavailable (%s); using defaults", e)
            return DEFAULT_STARTERS.model_copy(deep=True)


def describe_result(result: CompatibilityResult) -> str:
    """Compact JSON rendering used by the CLI and debug logs."""
    return json.dumps(result.model_dump(), ensure_ascii=False)
