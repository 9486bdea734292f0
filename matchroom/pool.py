"""
Participant pool for one room occurrence.

Tracks who is present and whether they can be matched. The pool is the only
place where participant state flips from available to ``matched``: ``claim``
does it for both sides at once under the pool lock, so two concurrent match
searches can never take the same person.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Dict, Iterable, List, NamedTuple, Optional

from .data_models import Participant, ParticipantState, Profile

logger = logging.getLogger(__name__)

AVAILABLE_STATES = frozenset({ParticipantState.IDLE, ParticipantState.SEARCHING})


class AvailableParticipant(NamedTuple):
    participant: Participant
    is_repeat: bool


class ParticipantPool:
    def __init__(self) -> None:
        self._members: Dict[str, Participant] = {}
        self._seq = itertools.count(1)
        self.lock = asyncio.Lock()

    def __contains__(self, participant_id: str) -> bool:
        return participant_id in self._members

    def __len__(self) -> int:
        return len(self._members)

    def get(self, participant_id: str) -> Participant:
        try:
            return self._members[participant_id]
        except KeyError:
            raise KeyError(f"Participant {participant_id} is not in the room") from None

    def find(self, participant_id: str) -> Optional[Participant]:
        return self._members.get(participant_id)

    def members(self) -> List[Participant]:
        return sorted(self._members.values(), key=lambda p: p.joined_seq)

    def join(self, participant: Participant) -> Participant:
        """Add a participant; re-joining keeps the existing entry and its history."""
        existing = self._members.get(participant.participant_id)
        if existing is not None:
            if existing.state == ParticipantState.LEFT:
                existing.state = ParticipantState.IDLE
            return existing
        participant.joined_seq = next(self._seq)
        participant.state = ParticipantState.IDLE
        self._members[participant.participant_id] = participant
        logger.info("Participant %s joined (seq=%d)", participant.participant_id, participant.joined_seq)
        return participant

    def join_profile(self, profile: Profile) -> Participant:
        return self.join(Participant(profile=profile))

    def leave(self, participant_id: str) -> Optional[Participant]:
        """Remove a participant. Session teardown is the controller's job."""
        participant = self._members.pop(participant_id, None)
        if participant is not None:
            participant.state = ParticipantState.LEFT
            logger.info("Participant %s left", participant_id)
        return participant

    def is_available(self, participant_id: str) -> bool:
        participant = self._members.get(participant_id)
        return participant is not None and participant.state in AVAILABLE_STATES

    def list_available(self, excluding: str) -> List[AvailableParticipant]:
        """Matchable participants for ``excluding``, in pool-join order.

        While anyone present has not been met yet, only those people are
        candidates, even when all of them are busy right now (the result is
        then empty and the requester keeps searching). Once every present
        member has been met, repeats are returned flagged ``is_repeat``; the
        most recent partner is dropped from that list unless it is the only one.
        """
        requester = self._members.get(excluding)
        history = requester.match_history if requester is not None else set()
        last_partner = requester.last_partner_id if requester is not None else None

        present = [p for p in self.members() if p.participant_id != excluding]
        unmet = [p for p in present if p.participant_id not in history]
        if unmet:
            return [AvailableParticipant(p, False) for p in unmet if p.state in AVAILABLE_STATES]

        repeats = [p for p in present if p.state in AVAILABLE_STATES]
        if len(repeats) > 1 and last_partner is not None:
            repeats = [p for p in repeats if p.participant_id != last_partner]
        return [AvailableParticipant(p, True) for p in repeats]

    def mark_searching(self, participant_id: str) -> bool:
        participant = self._members.get(participant_id)
        if participant is None:
            return False
        if participant.state in (ParticipantState.IDLE, ParticipantState.ENDING, ParticipantState.SEARCHING):
            participant.state = ParticipantState.SEARCHING
            return True
        return False

    def set_state(self, participant_ids: Iterable[str], state: ParticipantState) -> None:
        for pid in participant_ids:
            participant = self._members.get(pid)
            if participant is not None:
                participant.state = state

    async def claim(self, requester_id: str, partner_id: str) -> bool:
        """Atomically mark both sides ``matched`` if both are still available."""
        if requester_id == partner_id:
            return False
        async with self.lock:
            if not (self.is_available(requester_id) and self.is_available(partner_id)):
                return False
            self.set_state((requester_id, partner_id), ParticipantState.MATCHED)
            return True

    async def release(self, participant_ids: Iterable[str]) -> None:
        """Undo a claim that could not be turned into a session."""
        async with self.lock:
            for pid in participant_ids:
                participant = self._members.get(pid)
                if participant is not None and participant.state == ParticipantState.MATCHED:
                    participant.state = ParticipantState.SEARCHING
