"""
Learning from finished conversations.

``OutcomeAnalyzer`` turns a recorded match into insights and adjustments for
future matching, and an attendee's recent matches into personal networking
advice. Both ask the reasoning service when one is configured and fall back to
static guidance on any failure or timeout, the same way conversation starters
do.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel

from .config import DEFAULT_SCORER_TIMEOUT
from .data_models import MatchRecord, Profile
from .matching_models import ConversationOutcome, NetworkingInsight, NetworkingInsights
from .scoring import ReasoningService, _describe

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

DEFAULT_OUTCOME = ConversationOutcome(
    insights=["Conversation completed successfully"],
    improvement_suggestions=["Continue practicing active listening"],
    future_matching_adjustments=["Maintain current matching criteria"],
)

DEFAULT_INSIGHTS = NetworkingInsights(
    insights=[
        NetworkingInsight(
            type="goal_alignment",
            description="Focus on connecting with professionals who share your primary goals",
            confidence=0.8,
        )
    ],
    recommendations=[
        "Attend events that align with your industry and goals",
        "Follow up with connections within 24 hours",
        "Be specific about how you can help others",
    ],
    next_steps=[
        "Update your profile with more specific goals",
        "Schedule follow-up calls with recent connections",
    ],
)


def build_outcome_prompt(
    profile_a: Profile,
    profile_b: Profile,
    record: MatchRecord,
    follow_up_scheduled: bool = False,
) -> str:
    minutes = round(record.duration_seconds / 60, 1)
    return "\n\n".join(
        [
            "Analyze this networking conversation outcome:",
            _describe("PERSON 1", profile_a),
            _describe("PERSON 2", profile_b),
            "CONVERSATION DATA:\n"
            f"- Duration: {minutes} minutes\n"
            f"- Ended: {record.status.value}\n"
            f"- Compatibility Score: {record.compatibility_score:.0f}/100\n"
            f"- Connection Made: {record.connection_approved}\n"
            f"- Follow-up Scheduled: {follow_up_scheduled}",
            "Provide insights for improving future networking experiences and adjustments "
            "for future matching.",
        ]
    )


def build_insights_prompt(
    profile: Profile,
    recent: Sequence[MatchRecord],
    summary: Optional[Dict[str, Any]] = None,
) -> str:
    if recent:
        matches = "\n".join(
            f"- Compatibility: {r.compatibility_score:.0f}% ({r.status.value}"
            f"{', connected' if r.connection_approved else ''})"
            for r in recent
        )
    else:
        matches = "- none yet"
    if summary:
        history = (
            f"- Total Matches: {summary.get('total_matches', 0)}\n"
            f"- Total Connections: {summary.get('total_connections', 0)}\n"
            f"- Conversion Rate: {summary.get('conversion_rate', 0.0):.0%}"
        )
    else:
        history = "No history available"
    return "\n\n".join(
        [
            "Analyze this professional's networking profile and recent matches to provide "
            "personalized insights:",
            _describe("PROFILE", profile),
            "RECENT MATCHES:\n" + matches,
            "NETWORKING HISTORY:\n" + history,
            "Provide strategic networking insights and actionable recommendations.",
        ]
    )


class OutcomeAnalyzer:
    def __init__(self, reasoning: Optional[ReasoningService] = None, timeout: float = DEFAULT_SCORER_TIMEOUT):
        self.reasoning = reasoning
        self.timeout = timeout

    async def _ask(self, prompt: str, schema: Type[T], fallback: T, what: str) -> T:
        if self.reasoning is None:
            return fallback.model_copy(deep=True)
        try:
            result = await asyncio.wait_for(self.reasoning.evaluate(prompt, schema), timeout=self.timeout)
            return schema.model_validate(result.model_dump() if isinstance(result, BaseModel) else result)
        except Exception as e:
            logger.warning("%s unavailable (%s); using defaults", what, e)
            return fallback.model_copy(deep=True)

    async def analyze(
        self,
        profile_a: Profile,
        profile_b: Profile,
        record: MatchRecord,
        follow_up_scheduled: bool = False,
    ) -> ConversationOutcome:
        prompt = build_outcome_prompt(profile_a, profile_b, record, follow_up_scheduled)
        return await self._ask(prompt, ConversationOutcome, DEFAULT_OUTCOME, "Outcome analysis")

    async def insights(
        self,
        profile: Profile,
        recent: Sequence[MatchRecord],
        summary: Optional[Dict[str, Any]] = None,
    ) -> NetworkingInsights:
        prompt = build_insights_prompt(profile, recent, summary)
        return await self._ask(prompt, NetworkingInsights, DEFAULT_INSIGHTS, "Networking insights")
