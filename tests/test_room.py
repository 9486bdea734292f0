import asyncio

import pytest

from matchroom.config import RoomContext
from matchroom.data_models import MatchStatus, ParticipantState
from matchroom.ingest import InMemoryProfileStore, StaticEventRoster
from matchroom.media import MediaAccessError, MediaSessionAdapter, VirtualMediaDevices
from matchroom.room import Room

from conftest import BrokenChannel, make_profile, wait_until


@pytest.fixture
def store(trio):
    return InMemoryProfileStore([*trio, make_profile("d", goals=["hiring"])])


@pytest.fixture
def short_context(fast_settings):
    return RoomContext(event_id="evt-1", settings=fast_settings.with_overrides(session_seconds=5))


def in_session(room, *user_ids):
    return all(room.controller.session_for(u) is not None for u in user_ids)


def test_two_entrants_are_paired_and_connected(context, store):
    async def run():
        room = Room(context, store)
        await room.enter("a")
        assert room.status("a")["waiting"] is True
        await room.enter("b")
        await wait_until(lambda: room.pool.get("a").state == ParticipantState.IN_CALL
                         and room.pool.get("b").state == ParticipantState.IN_CALL)
        status = room.status("b")
        await room.close()
        return status

    status = asyncio.run(run())
    assert status["partner_id"] == "a"
    assert status["is_initiator"] is False
    assert status["compatibility_score"] == 55
    assert status["remaining"] <= 300
    assert status["waiting"] is False


def test_session_times_out_and_partners_rematch(short_context, store):
    async def run():
        room = Room(short_context, store)
        await room.enter("a")
        await room.enter("b")
        await wait_until(lambda: len(room.recorder.records) >= 2)
        records = room.recorder.records
        await room.close()
        return records

    first, second = asyncio.run(run())[:2]
    assert first.status == MatchStatus.COMPLETED
    assert first.duration_seconds == 5
    assert first.pair == second.pair == ("a", "b")
    assert first.started_at < second.started_at


def test_denied_media_blocks_entry(context, store):
    media = MediaSessionAdapter(devices=VirtualMediaDevices(denied={"a"}))

    async def run():
        room = Room(context, store, media=media)
        with pytest.raises(MediaAccessError):
            await room.enter("a")
        members = len(room.pool)
        await room.close()
        return members

    assert asyncio.run(run()) == 0


def test_partner_requeued_after_leave(context, store):
    async def run():
        room = Room(context, store)
        await room.enter("a")
        await room.enter("b")
        await wait_until(lambda: in_session(room, "a", "b"))
        await room.leave("a")
        await wait_until(lambda: room.status("b")["waiting"])
        await room.enter("c")
        await wait_until(lambda: in_session(room, "b", "c"))
        partner = room.status("b")["partner_id"]
        records = room.recorder.records
        await room.close()
        return partner, records

    partner, records = asyncio.run(run())
    assert partner == "c"
    assert records[0].status == MatchStatus.ABANDONED
    assert records[0].pair == ("a", "b")


def test_skip_then_rematch_as_repeat(context, store):
    async def run():
        room = Room(context, store)
        await room.enter("a")
        await room.enter("b")
        await wait_until(lambda: in_session(room, "a", "b"))
        assert await room.skip("a") is True
        await wait_until(lambda: len(room.recorder.records) == 1 and in_session(room, "a", "b"))
        session = room.controller.session_for("a")
        records = room.recorder.records
        await room.close()
        return session, records

    session, records = asyncio.run(run())
    assert records[0].status == MatchStatus.SKIPPED
    assert session.is_repeat


def test_extension_and_connection_through_room(context, store):
    async def run():
        room = Room(context, store)
        await room.enter("a")
        await room.enter("b")
        await wait_until(lambda: in_session(room, "a", "b"))
        first = await room.request_extension("a")
        second = await room.request_extension("b")
        starters = await room.conversation_starters("a")
        await room.request_connection("a")
        match_id = room.status("a")["match_id"]
        await room.skip("b")
        await room.request_connection("b", match_id=match_id)
        record = room.recorder.get_match(match_id)
        await room.close()
        return first, second, record, starters

    first, second, record, starters = asyncio.run(run())
    assert (first.value, second.value) == ("granted", "rejected")
    assert record.connection_approved
    assert starters.ice_breakers
    assert starters.follow_up_suggestions


def test_roster_sync_adds_and_removes(context, store):
    roster = StaticEventRoster({"evt-1": ["a", "b", "unknown"]})

    async def run():
        room = Room(context, store, roster=roster)
        await room.sync_roster()
        joined = sorted(p.participant_id for p in room.pool.members())
        roster.set_active("evt-1", ["b"])
        await room.sync_roster()
        remaining = sorted(p.participant_id for p in room.pool.members())
        await room.close()
        return joined, remaining

    joined, remaining = asyncio.run(run())
    assert joined == ["a", "b"]
    assert remaining == ["b"]


def test_close_records_open_sessions(context, store):
    async def run():
        room = Room(context, store)
        await room.enter("a")
        await room.enter("b")
        await wait_until(lambda: in_session(room, "a", "b"))
        await room.close()
        return room

    room = asyncio.run(run())
    assert len(room.pool) == 0
    assert [r.status for r in room.recorder.records] == [MatchStatus.ABANDONED]
    assert room.status("a")["state"] == "left"


def test_leave_before_media_connects_requeues_partner(context, store):
    media = MediaSessionAdapter(channel=BrokenChannel())

    async def run():
        room = Room(context, store, media=media)
        await room.enter("a")
        await room.enter("b")
        await wait_until(lambda: in_session(room, "a", "b"))
        state = room.status("b")["state"]
        warnings = room.status("b")["warnings"]
        await room.leave("a")
        await wait_until(lambda: room.status("b")["waiting"])
        records = room.recorder.records
        await room.close()
        return state, warnings, records

    state, warnings, records = asyncio.run(run())
    assert state == "matched"
    assert warnings
    assert len(records) == 1
    assert records[0].status == MatchStatus.ABANDONED


def test_connected_match_feeds_analysis_and_scoring_context(context, store):
    async def run():
        room = Room(context, store)
        await room.enter("a")
        await room.enter("b")
        await wait_until(lambda: in_session(room, "a", "b"))
        match_id = room.status("a")["match_id"]
        await room.request_connection("a")
        await room.request_connection("b")
        await room.skip("a")
        await wait_until(lambda: room.recorder.analysis_for(match_id) is not None)
        scoring_context = room._scoring_context(room.pool.get("a"), room.pool.get("b"))
        insights = await room.insights("a")
        await room.close()
        return room.recorder.analysis_for(match_id), scoring_context, insights

    outcome, scoring_context, insights = asyncio.run(run())
    assert outcome.insights
    assert scoring_context.preferred_threshold == pytest.approx(55.0)
    assert scoring_context.previous_interactions == 1
    assert insights.recommendations
