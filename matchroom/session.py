"""
Session lifecycle for matched pairs.

Per participant: idle -> searching -> matched -> in_call -> ending -> searching,
and -> left from any state.

A session is created for both sides at once from a claimed ``MatchCandidate``.
Its countdown is driven by a single clock (``run_countdown``) that ticks once
per second; media connectivity is observed (``matched`` -> ``in_call``) but
never gates the timer. Timeout, skip and leave all converge on
``end_session``, which is idempotent: the first caller tears down media, writes
the match record and notifies listeners; later callers are no-ops.

State checks and the matching state changes are done without awaiting in
between, so on a single event loop every transition is atomic.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from .config import RoomContext
from .data_models import (
    EndReason,
    ParticipantState,
    Session,
    SessionStatus,
    SessionSummary,
    utcnow,
)
from .matching_models import MatchCandidate
from .media import MediaSessionAdapter, PeerMediaSession
from .pool import ParticipantPool
from .recorder import OutcomeRecorder

logger = logging.getLogger(__name__)

SessionListener = Callable[[Session], None]


class ExtensionDecision(str, Enum):
    GRANTED = "granted"
    PENDING = "pending"
    REJECTED = "rejected"


class ExtensionPolicy(Protocol):
    def decide(self, session: Session, requester_id: str) -> Optional[bool]:
        """True approves, False rejects, None waits for more input."""
        ...


class SingleSidedExtensionPolicy:
    """Any one participant's request is enough."""

    def decide(self, session: Session, requester_id: str) -> Optional[bool]:
        return True


class MutualConsentExtensionPolicy:
    """Both participants have to ask before the session is extended."""

    def decide(self, session: Session, requester_id: str) -> Optional[bool]:
        session.pending_extension.add(requester_id)
        if session.pending_extension >= set(session.participant_ids):
            return True
        return None


class SessionController:
    def __init__(
        self,
        context: RoomContext,
        pool: ParticipantPool,
        recorder: OutcomeRecorder,
        media: Optional[MediaSessionAdapter] = None,
        extension_policy: Optional[ExtensionPolicy] = None,
    ):
        self.context = context
        self.settings = context.settings
        self.pool = pool
        self.recorder = recorder
        self.media = media
        self.extension_policy = extension_policy or SingleSidedExtensionPolicy()
        self._sessions: Dict[str, Session] = {}
        self._by_participant: Dict[str, str] = {}
        self._links: Dict[str, List[PeerMediaSession]] = {}
        self.on_session_started: List[SessionListener] = []
        self.on_session_ended: List[SessionListener] = []

    # -- lookups ----------------------------------------------------------

    def session_for(self, participant_id: str) -> Optional[Session]:
        session_id = self._by_participant.get(participant_id)
        return self._sessions.get(session_id) if session_id else None

    def get(self, session_id: str) -> Session:
        return self._sessions[session_id]

    def active_sessions(self) -> List[Session]:
        return [s for s in self._sessions.values() if s.is_live]

    # -- creation -------------------------------------------------------

    async def start_session(self, candidate: MatchCandidate, duration: Optional[int] = None) -> Optional[Session]:
        """Turn a claimed candidate into a live session for both sides.

        Returns None (and releases the claim) when either side is no longer
        claimed, e.g. because they left while the match was being chosen.
        """
        a, b = candidate.requester_id, candidate.partner_id
        for pid in (a, b):
            participant = self.pool.find(pid)
            if participant is None or participant.state != ParticipantState.MATCHED or pid in self._by_participant:
                logger.info("Cannot start session %s/%s: %s is no longer claimed", a, b, pid)
                await self.pool.release((a, b))
                return None

        seconds = int(duration or self.settings.session_seconds)
        session = Session(
            session_id=uuid.uuid4().hex,
            match_id=f"match_{uuid.uuid4().hex[:12]}",
            event_id=self.context.event_id,
            participant_ids=(a, b),
            initiator_id=candidate.initiator_id,
            compatibility_score=candidate.score,
            is_repeat=candidate.is_repeat,
            rationale=candidate.rationale,
            conversation_starters=list(candidate.conversation_starters),
            duration=seconds,
            remaining=seconds,
        )
        self._sessions[session.session_id] = session
        for pid in (a, b):
            self._by_participant[pid] = session.session_id
        self.pool.get(a).remember_partner(b)
        self.pool.get(b).remember_partner(a)
        logger.info(
            "Session %s started: %s <-> %s (%ds, initiator=%s)",
            session.session_id, a, b, seconds, session.initiator_id,
        )

        for listener in list(self.on_session_started):
            listener(session)
        await self._connect_media(session)
        return session

    async def _connect_media(self, session: Session) -> None:
        if self.media is None or not session.is_live:
            return
        # registered up front so an end during setup tears down what exists so far
        links = self._links.setdefault(session.session_id, [])
        # initiator last, so the responder's link exists when the offer lands
        order = sorted(session.participant_ids, key=lambda pid: pid == session.initiator_id)
        try:
            for pid in order:
                if not session.is_live:
                    return
                if not self.media.has_endpoint(pid):
                    self._warn(session, f"no media endpoint for {pid}")
                    continue
                endpoint = self.media.endpoint(pid)
                link = await endpoint.connect(
                    endpoint.local_media,
                    pid == session.initiator_id,
                    session.partner_of(pid),
                    link_id=session.session_id,
                )
                if not session.is_live:
                    link.destroy()
                    return
                link.on_connected.append(lambda _link, pid=pid: self.mark_in_call(session, pid))
                link.on_error.append(lambda _link, err, pid=pid: self._warn(session, f"media error for {pid}: {err}"))
                links.append(link)
            for link in list(links):
                if session.is_live:
                    await link.endpoint.open(link)
        except Exception as e:
            self._warn(session, f"media setup failed: {e}")

    def _warn(self, session: Session, message: str) -> None:
        session.warnings.append(message)
        logger.warning("Session %s: %s (continuing without media)", session.session_id, message)

    def mark_in_call(self, session: Session, participant_id: str) -> None:
        """Media reported a connection; purely observational."""
        if not session.is_live:
            return
        session.media_connected = True
        participant = self.pool.find(participant_id)
        if participant is not None and participant.state == ParticipantState.MATCHED:
            participant.state = ParticipantState.IN_CALL

    # -- countdown ------------------------------------------------------

    async def tick(self, session: Session) -> int:
        """Advance the countdown by one second; reaching zero ends the session once."""
        if not session.is_live:
            return session.remaining
        session.remaining = max(0, session.remaining - 1)
        session.elapsed += 1
        if session.remaining == 0:
            await self.end_session(session, EndReason.TIMEOUT)
        return session.remaining

    async def run_countdown(self, session: Session) -> None:
        """The session's single authoritative clock."""
        interval = self.settings.tick_seconds
        while session.is_live:
            await asyncio.sleep(interval)
            if not session.is_live:
                break
            await self.tick(session)

    # -- participant actions ------------------------------------------

    async def request_extension(self, participant_id: str) -> ExtensionDecision:
        session = self.session_for(participant_id)
        if session is None or not session.is_live:
            return ExtensionDecision.REJECTED
        participant = self.pool.find(participant_id)
        if participant is None or participant.state not in (ParticipantState.MATCHED, ParticipantState.IN_CALL):
            return ExtensionDecision.REJECTED
        if not session.can_extend:
            logger.info("Session %s already extended; rejecting %s", session.session_id, participant_id)
            return ExtensionDecision.REJECTED

        decision = self.extension_policy.decide(session, participant_id)
        if decision is None:
            session.status = SessionStatus.EXTENDING
            return ExtensionDecision.PENDING
        if not decision:
            session.status = SessionStatus.ACTIVE
            session.pending_extension.clear()
            return ExtensionDecision.REJECTED

        increment = self.settings.extension_seconds
        session.remaining += increment
        session.duration += increment
        session.extended_by += increment
        session.can_extend = False
        session.pending_extension.clear()
        session.status = SessionStatus.ACTIVE
        logger.info("Session %s extended by %ds (requested by %s)", session.session_id, increment, participant_id)
        return ExtensionDecision.GRANTED

    def request_connection(self, participant_id: str) -> bool:
        """Opt in to connect with the current partner; settled when the session ends."""
        session = self.session_for(participant_id)
        if session is None or not session.is_live:
            return False
        session.connection_requests.add(participant_id)
        return True

    async def skip(self, participant_id: str) -> bool:
        session = self.session_for(participant_id)
        if session is None:
            return False
        return await self.end_session(session, EndReason.SKIP, ended_by=participant_id)

    async def leave(self, participant_id: str) -> bool:
        """Leave the room from any state. Always wins over ticks and extensions."""
        participant = self.pool.leave(participant_id)
        session = self.session_for(participant_id)
        ended = False
        if session is not None:
            ended = await self.end_session(session, EndReason.LEAVE, ended_by=participant_id)
        if self.media is not None:
            self.media.release(participant_id)
        return participant is not None or ended

    async def end_session(self, session: Session, reason: EndReason, ended_by: Optional[str] = None) -> bool:
        """Tear down, record and release a session. Returns False if it was already ending."""
        if session.status in (SessionStatus.ENDING, SessionStatus.ENDED):
            return False
        session.status = SessionStatus.ENDING
        session.end_reason = reason
        session.ended_by = ended_by
        session.ended_at = utcnow()
        for pid in session.participant_ids:
            if self._by_participant.get(pid) == session.session_id:
                del self._by_participant[pid]
            participant = self.pool.find(pid)
            if participant is not None:
                participant.state = ParticipantState.ENDING
        for link in self._links.pop(session.session_id, []):
            link.destroy()
        logger.info("Session %s ending (%s%s)", session.session_id, reason.value, f" by {ended_by}" if ended_by else "")

        try:
            await self.recorder.record_match(SessionSummary.from_session(session))
        except Exception as e:
            logger.warning("Recording session %s failed: %s", session.session_id, e)
        session.status = SessionStatus.ENDED

        for listener in list(self.on_session_ended):
            listener(session)
        return True
