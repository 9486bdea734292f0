import asyncio
from datetime import timedelta

import pytest

from matchroom.data_models import EndReason, MatchStatus, SessionSummary, utcnow
from matchroom.matching_models import ConversationOutcome, NetworkingInsights
from matchroom.outcomes import (
    DEFAULT_INSIGHTS,
    DEFAULT_OUTCOME,
    OutcomeAnalyzer,
    build_insights_prompt,
    build_outcome_prompt,
)

from conftest import FakeReasoning, make_profile


def recorded(recorder, b="b", score=70.0, requests=(), match_id="m1", offset=0):
    started = utcnow() + timedelta(minutes=offset)
    return asyncio.run(
        recorder.record_match(
            SessionSummary(
                match_id=match_id,
                event_id="evt-1",
                participant_ids=("a", b),
                compatibility_score=score,
                started_at=started,
                ended_at=started + timedelta(seconds=240),
                duration_seconds=240,
                end_reason=EndReason.TIMEOUT,
                connection_requests=set(requests),
            )
        )
    )


def test_outcome_prompt_describes_conversation(recorder):
    record = recorded(recorder, requests={"a", "b"})
    prompt = build_outcome_prompt(make_profile("a", job_title="CTO"), make_profile("b"), record)
    assert "Duration: 4.0 minutes" in prompt
    assert "Ended: completed" in prompt
    assert "Connection Made: True" in prompt
    assert "CTO" in prompt


def test_outcome_defaults_without_reasoning(recorder):
    record = recorded(recorder)
    outcome = asyncio.run(OutcomeAnalyzer().analyze(make_profile("a"), make_profile("b"), record))
    assert outcome == DEFAULT_OUTCOME
    assert outcome is not DEFAULT_OUTCOME


def test_outcome_from_reasoning(recorder):
    record = recorded(recorder)
    reasoning = FakeReasoning(
        answer={
            "insights": ["Both care about hiring"],
            "improvement_suggestions": ["Ask about team size earlier"],
            "future_matching_adjustments": ["Weight hiring goals higher"],
        }
    )
    outcome = asyncio.run(OutcomeAnalyzer(reasoning).analyze(make_profile("a"), make_profile("b"), record))
    assert isinstance(outcome, ConversationOutcome)
    assert outcome.future_matching_adjustments == ["Weight hiring goals higher"]
    assert "Analyze this networking conversation outcome" in reasoning.prompts[0]


@pytest.mark.parametrize(
    "reasoning",
    [
        FakeReasoning(error=RuntimeError("quota")),
        FakeReasoning(answer={"insights": "not a list"}),
        FakeReasoning(answer={}, delay=1.0),
    ],
)
def test_outcome_falls_back_on_failure(recorder, reasoning):
    record = recorded(recorder)
    analyzer = OutcomeAnalyzer(reasoning, timeout=0.05)
    outcome = asyncio.run(analyzer.analyze(make_profile("a"), make_profile("b"), record))
    assert outcome == DEFAULT_OUTCOME


def test_insights_prompt_lists_recent_matches(recorder):
    recorded(recorder, b="b", score=80.0, requests={"a", "b"}, match_id="m1")
    recorded(recorder, b="c", score=30.0, match_id="m2", offset=6)
    prompt = build_insights_prompt(make_profile("a"), recorder.recent_matches("a"), recorder.summarize("a"))
    assert "Compatibility: 80% (completed, connected)" in prompt
    assert "Compatibility: 30% (completed)" in prompt
    assert "Conversion Rate: 50%" in prompt
    assert "No history available" in build_insights_prompt(make_profile("a"), [])


def test_insights_from_reasoning_and_fallback():
    answer = NetworkingInsights.model_validate(
        {
            "insights": [{"type": "skill_complement", "description": "Seek designers", "confidence": 0.7}],
            "recommendations": ["Follow up"],
            "next_steps": ["Book a call"],
        }
    )
    good = asyncio.run(OutcomeAnalyzer(FakeReasoning(answer=answer)).insights(make_profile("a"), []))
    assert good.insights[0].type == "skill_complement"
    bad = {"insights": [{"type": "vibes", "description": "x", "confidence": 2}]}
    fallback = asyncio.run(OutcomeAnalyzer(FakeReasoning(answer=bad)).insights(make_profile("a"), []))
    assert fallback == DEFAULT_INSIGHTS


def test_recent_matches_and_analysis_storage(recorder):
    recorded(recorder, b="b", match_id="m1")
    recorded(recorder, b="c", match_id="m2", offset=6)
    recorded(recorder, b="d", match_id="m3", offset=12)
    assert [r.match_id for r in recorder.recent_matches("a", limit=2)] == ["m2", "m3"]
    assert recorder.analysis_for("m1") is None
    recorder.attach_analysis("m1", DEFAULT_OUTCOME)
    assert recorder.analysis_for("m1") == DEFAULT_OUTCOME
    with pytest.raises(KeyError):
        recorder.attach_analysis("nope", DEFAULT_OUTCOME)
