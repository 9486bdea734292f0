"""
Match selection for a single requesting participant.

Pseudocode:
1) Fetch the available candidates from the pool (non-repeats first).
2) Nothing available -> return None; the caller keeps searching.
3) Score every candidate against the requester concurrently.
4) Pick the strictly highest score; ties go to the earliest pool join.
5) Initiator of the media session = lexicographically smaller id.
6) Claim both participants in the pool. If someone else got there first,
   start over from a fresh candidate list, up to ``max_claim_retries`` times.

Scoring happens outside the pool lock (it may wait on the network); the claim
re-validates availability, so a stale score can never double-book anyone.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

from .config import DEFAULT_CLAIM_RETRIES
from .data_models import Participant, ParticipantState
from .matching_models import CompatibilityResult, MatchCandidate, ScoringContext
from .pool import AvailableParticipant, ParticipantPool
from .scoring import CompatibilityScorer

logger = logging.getLogger(__name__)

ContextFactory = Callable[[Participant, Participant], ScoringContext]


def choose_initiator(participant_a: str, participant_b: str) -> str:
    """Total order over ids decides who opens the peer session."""
    return min(participant_a, participant_b)


def _rank(scored: List[Tuple[AvailableParticipant, CompatibilityResult]]):
    # highest score first, earliest join breaks ties
    return sorted(scored, key=lambda item: (-item[1].score, item[0].participant.joined_seq))


class MatchSelector:
    def __init__(
        self,
        pool: ParticipantPool,
        scorer: CompatibilityScorer,
        context_factory: Optional[ContextFactory] = None,
        max_claim_retries: int = DEFAULT_CLAIM_RETRIES,
    ):
        self.pool = pool
        self.scorer = scorer
        self.context_factory = context_factory
        self.max_claim_retries = max_claim_retries

    def _context(self, requester: Participant, candidate: Participant) -> Optional[ScoringContext]:
        if self.context_factory is None:
            return None
        return self.context_factory(requester, candidate)

    async def score_candidates(
        self,
        requester: Participant,
        candidates: List[AvailableParticipant],
    ) -> List[Tuple[AvailableParticipant, CompatibilityResult]]:
        results = await asyncio.gather(
            *(
                self.scorer.score(requester.profile, c.participant.profile, self._context(requester, c.participant))
                for c in candidates
            )
        )
        return list(zip(candidates, results))

    async def find_match(self, requester: Participant) -> Optional[MatchCandidate]:
        requester_id = requester.participant_id
        for attempt in range(1, self.max_claim_retries + 1):
            if not self.pool.is_available(requester_id):
                # claimed by someone else's search, or gone
                return None
            candidates = self.pool.list_available(excluding=requester_id)
            if not candidates:
                return None

            ranked = _rank(await self.score_candidates(requester, candidates))
            best, result = ranked[0]
            partner_id = best.participant.participant_id

            if await self.pool.claim(requester_id, partner_id):
                logger.info(
                    "Matched %s with %s (score=%.1f, repeat=%s, source=%s)",
                    requester_id, partner_id, result.score, best.is_repeat, result.source,
                )
                return MatchCandidate(
                    requester_id=requester_id,
                    partner_id=partner_id,
                    score=result.score,
                    rationale=result.rationale,
                    strengths=result.strengths,
                    opportunities=result.opportunities,
                    conversation_starters=result.conversation_starters,
                    initiator_id=choose_initiator(requester_id, partner_id),
                    is_repeat=best.is_repeat,
                )
            logger.debug(
                "Claim conflict for %s -> %s (attempt %d/%d)",
                requester_id, partner_id, attempt, self.max_claim_retries,
            )

        logger.warning("Giving up on match for %s after %d claim conflicts", requester_id, self.max_claim_retries)
        participant = self.pool.find(requester_id)
        if participant is not None and participant.state == ParticipantState.IDLE:
            participant.state = ParticipantState.SEARCHING
        return None
