"""
A live networking room: wires the pool, selector, session controller, media
and recorder together for one event occurrence.

Each searching participant has a small search loop (retrying on a fixed poll
interval while nobody is available). Each session gets one countdown task.
When a session ends, both former partners go back to searching on their own
after a short delay, unless they left in the meantime.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Dict, Optional, Set

from .config import RoomContext
from .data_models import Participant, ParticipantState, Session
from .ingest import EventRoster, ProfileStore
from .matcher import MatchSelector
from .matching_models import ConversationStarters, NetworkingInsights, ScoringContext
from .media import MediaAccessError, MediaSessionAdapter
from .outcomes import OutcomeAnalyzer
from .pool import ParticipantPool
from .recorder import OutcomeRecorder
from .scoring import CompatibilityScorer, ConversationStarterGenerator, LocalCompatibilityScorer
from .session import ExtensionDecision, ExtensionPolicy, SessionController

logger = logging.getLogger(__name__)


class Room:
    def __init__(
        self,
        context: RoomContext,
        profiles: ProfileStore,
        scorer: Optional[CompatibilityScorer] = None,
        recorder: Optional[OutcomeRecorder] = None,
        media: Optional[MediaSessionAdapter] = None,
        roster: Optional[EventRoster] = None,
        extension_policy: Optional[ExtensionPolicy] = None,
        starters: Optional[ConversationStarterGenerator] = None,
        analyzer: Optional[OutcomeAnalyzer] = None,
    ):
        settings = context.settings
        self.context = context
        self.settings = settings
        self.profiles = profiles
        self.roster = roster
        self.pool = ParticipantPool()
        self.recorder = recorder or OutcomeRecorder(retries=settings.persist_retries, backoff=settings.retry_backoff)
        self.media = media if media is not None else MediaSessionAdapter()
        self.selector = MatchSelector(
            self.pool,
            scorer or LocalCompatibilityScorer(),
            context_factory=self._scoring_context,
            max_claim_retries=settings.max_claim_retries,
        )
        self.controller = SessionController(
            context, self.pool, self.recorder, media=self.media, extension_policy=extension_policy
        )
        self.starters = starters or ConversationStarterGenerator(timeout=settings.scorer_timeout)
        self.analyzer = analyzer or OutcomeAnalyzer(timeout=settings.scorer_timeout)
        self.controller.on_session_started.append(self._on_session_started)
        self.controller.on_session_ended.append(self._on_session_ended)
        self._search_tasks: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

    # -- plumbing -------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Room task %s failed: %r", task.get_name(), error)

    def _scoring_context(self, requester: Participant, candidate: Participant) -> ScoringContext:
        return ScoringContext(
            event_type=self.context.event_type,
            previous_interactions=self.recorder.pair_interactions(
                requester.participant_id, candidate.participant_id
            ),
            time_limit_minutes=max(1, self.settings.session_seconds // 60),
            preferred_threshold=self.recorder.preferred_threshold(requester.participant_id),
        )

    # -- membership -----------------------------------------------------

    async def enter(self, user_id: str) -> Participant:
        """Bring a user into the room and start looking for a partner.

        Raises ``MediaAccessError`` when camera/microphone access is denied;
        the user is not added in that case.
        """
        profile = await self.profiles.get_profile(user_id)
        self.media.acquire(user_id)
        participant = self.pool.join_profile(profile)
        self.pool.mark_searching(user_id)
        self._start_search(user_id)
        return participant

    async def leave(self, user_id: str) -> bool:
        task = self._search_tasks.pop(user_id, None)
        if task is not None and not task.done():
            task.cancel()
        return await self.controller.leave(user_id)

    async def sync_roster(self) -> None:
        """Reconcile room membership with the event roster."""
        if self.roster is None:
            return
        active = set(await self.roster.list_active_participants(self.context.event_id))
        present = {p.participant_id for p in self.pool.members()}
        for user_id in sorted(active - present):
            try:
                await self.enter(user_id)
            except MediaAccessError as e:
                logger.warning("%s cannot join until media access is granted: %s", user_id, e)
            except KeyError as e:
                logger.warning("Skipping roster entry %s: %s", user_id, e)
        for user_id in sorted(present - active):
            await self.leave(user_id)

    async def watch_roster(self) -> None:
        while True:
            await self.sync_roster()
            await asyncio.sleep(self.settings.roster_poll)

    # -- matching loop --------------------------------------------------

    def _start_search(self, user_id: str) -> None:
        task = self._search_tasks.get(user_id)
        if task is not None and not task.done():
            return
        self._search_tasks[user_id] = self._spawn(self._search(user_id), name=f"search:{user_id}")

    async def _search(self, user_id: str) -> Optional[Session]:
        while True:
            participant = self.pool.find(user_id)
            if participant is None or participant.state != ParticipantState.SEARCHING:
                return None
            candidate = await self.selector.find_match(participant)
            if candidate is not None:
                session = await self.controller.start_session(candidate)
                if session is not None:
                    return session
                continue
            await asyncio.sleep(self.settings.search_poll)

    def _on_session_started(self, session: Session) -> None:
        self._spawn(self.controller.run_countdown(session), name=f"countdown:{session.session_id}")

    def _on_session_ended(self, session: Session) -> None:
        self._spawn(self._analyze(session), name=f"analyze:{session.match_id}")
        for user_id in session.participant_ids:
            if user_id in self.pool:
                self._spawn(self._requeue(user_id), name=f"requeue:{user_id}")

    async def _requeue(self, user_id: str) -> None:
        await asyncio.sleep(self.settings.rematch_delay)
        participant = self.pool.find(user_id)
        if participant is None or participant.state != ParticipantState.ENDING:
            return
        self.pool.mark_searching(user_id)
        self._start_search(user_id)

    async def _analyze(self, session: Session) -> None:
        record = self.recorder.get_match(session.match_id)
        first, second = session.participant_ids
        outcome = await self.analyzer.analyze(
            await self.profiles.get_profile(first),
            await self.profiles.get_profile(second),
            record,
        )
        self.recorder.attach_analysis(record.match_id, outcome)

    # -- participant actions ------------------------------------------

    async def request_extension(self, user_id: str) -> ExtensionDecision:
        return await self.controller.request_extension(user_id)

    async def skip(self, user_id: str) -> bool:
        return await self.controller.skip(user_id)

    async def request_connection(self, user_id: str, match_id: Optional[str] = None) -> bool:
        """Opt in to stay in touch with the current partner, or with a past match."""
        if match_id is None:
            return self.controller.request_connection(user_id)
        await self.recorder.record_connection(match_id, user_id)
        return True

    async def conversation_starters(self, user_id: str) -> Optional[ConversationStarters]:
        session = self.controller.session_for(user_id)
        if session is None:
            return None
        me = self.pool.get(user_id).profile
        partner = self.pool.get(session.partner_of(user_id)).profile
        context = ScoringContext(
            event_type=self.context.event_type,
            time_limit_minutes=max(1, session.remaining // 60),
        )
        return await self.starters.generate(me, partner, context)

    async def insights(self, user_id: str) -> NetworkingInsights:
        """Personal networking advice from the user's recent matches in this room."""
        profile = await self.profiles.get_profile(user_id)
        return await self.analyzer.insights(
            profile, self.recorder.recent_matches(user_id), self.recorder.summarize(user_id)
        )

    def status(self, user_id: str) -> Dict[str, Any]:
        """What a client needs to render: state, waiting flag, partner and timer."""
        participant = self.pool.find(user_id)
        if participant is None:
            return {"user_id": user_id, "state": ParticipantState.LEFT.value, "waiting": False}
        session = self.controller.session_for(user_id)
        status: Dict[str, Any] = {
            "user_id": user_id,
            "state": participant.state.value,
            "waiting": participant.state == ParticipantState.SEARCHING,
            "partners_met": len(participant.match_history),
        }
        if session is not None:
            status.update(
                {
                    "session_id": session.session_id,
                    "match_id": session.match_id,
                    "partner_id": session.partner_of(user_id),
                    "remaining": session.remaining,
                    "can_extend": session.can_extend,
                    "is_initiator": session.initiator_id == user_id,
                    "compatibility_score": session.compatibility_score,
                    "warnings": list(session.warnings),
                }
            )
        return status

    # -- shutdown -------------------------------------------------------

    async def close(self) -> None:
        """Everyone leaves (open sessions are recorded), then background tasks stop."""
        for participant in self.pool.members():
            await self.leave(participant.participant_id)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
