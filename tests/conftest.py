import asyncio
from typing import Callable, Sequence

import pytest

from matchroom.config import RoomContext, RoomSettings
from matchroom.data_models import Participant, Profile
from matchroom.pool import ParticipantPool
from matchroom.recorder import InMemoryPersistenceSink, OutcomeRecorder


def make_profile(
    user_id: str,
    goals: Sequence[str] = (),
    skills: Sequence[str] = (),
    industry: str = "",
    company: str = "Acme",
    **extra,
) -> Profile:
    return Profile(
        user_id=user_id,
        first_name=user_id.upper(),
        goals=tuple(goals),
        skills=tuple(skills),
        industry=industry,
        company=company,
        **extra,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def fast_settings() -> RoomSettings:
    return RoomSettings(
        session_seconds=300,
        extension_seconds=180,
        tick_seconds=0.01,
        rematch_delay=0.01,
        search_poll=0.01,
        scorer_timeout=0.2,
        retry_backoff=0.0,
        roster_poll=0.01,
    )


@pytest.fixture
def context(fast_settings) -> RoomContext:
    return RoomContext(event_id="evt-1", settings=fast_settings, event_type="Founders & Investors")


@pytest.fixture
def sink() -> InMemoryPersistenceSink:
    return InMemoryPersistenceSink()


@pytest.fixture
def recorder(sink) -> OutcomeRecorder:
    return OutcomeRecorder(sink, retries=1, backoff=0.0)


@pytest.fixture
def pool() -> ParticipantPool:
    return ParticipantPool()


@pytest.fixture
def trio():
    """A-B score highest, A-C next, B-C lowest."""
    a = make_profile("a", goals=["fundraising", "hiring"], skills=["product"], industry="fintech")
    b = make_profile("b", goals=["advice"], skills=["fundraising strategy", "hiring"], industry="fintech")
    c = make_profile("c", goals=["sales"], skills=["hiring"], industry="retail")
    return a, b, c


def join_all(pool: ParticipantPool, profiles, searching: bool = True):
    members = []
    for profile in profiles:
        participant = pool.join(Participant(profile=profile))
        if searching:
            pool.mark_searching(profile.user_id)
        members.append(participant)
    return members


class BrokenChannel:
    """Signaling channel whose every send fails, so media never connects."""

    def subscribe(self, participant_id, handler):
        pass

    def unsubscribe(self, participant_id):
        pass

    async def send(self, sender_id, recipient_id, payload):
        raise ConnectionError("signaling down")


class FakeReasoning:
    """Reasoning service stand-in: canned answer, error or delay."""

    def __init__(self, answer=None, error=None, delay=0.0):
        self.answer = answer
        self.error = error
        self.delay = delay
        self.prompts = []

    async def evaluate(self, prompt, schema):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.answer
