import asyncio

from matchroom.data_models import ParticipantState
from matchroom.matcher import MatchSelector, choose_initiator
from matchroom.pool import ParticipantPool
from matchroom.scoring import LocalCompatibilityScorer

from conftest import join_all, make_profile


class NeverClaimPool(ParticipantPool):
    async def claim(self, requester_id, partner_id):
        self.attempts = getattr(self, "attempts", 0) + 1
        return False


def selector_for(pool, retries=3):
    return MatchSelector(pool, LocalCompatibilityScorer(), max_claim_retries=retries)


def finish(pool, candidate):
    """Stand-in for a session ending: remember partners, back to searching."""
    a, b = candidate.requester_id, candidate.partner_id
    pool.get(a).remember_partner(b)
    pool.get(b).remember_partner(a)
    pool.set_state([a, b], ParticipantState.SEARCHING)


def test_initiator_is_smaller_id():
    assert choose_initiator("bob", "alice") == "alice"
    assert choose_initiator("u1", "u2") == "u1"


def test_picks_highest_score(pool, trio):
    join_all(pool, trio)
    candidate = asyncio.run(selector_for(pool).find_match(pool.get("a")))
    assert candidate.partner_id == "b"
    assert candidate.score == 55
    assert candidate.initiator_id == "a"
    assert not candidate.is_repeat
    assert pool.get("a").state == ParticipantState.MATCHED
    assert pool.get("b").state == ParticipantState.MATCHED


def test_ties_go_to_earliest_join(pool):
    join_all(pool, [make_profile("z"), make_profile("y"), make_profile("x")])
    candidate = asyncio.run(selector_for(pool).find_match(pool.get("x")))
    assert candidate.partner_id == "z"
    assert candidate.score == 0
    assert candidate.initiator_id == "x"


def test_empty_pool_returns_none(pool):
    join_all(pool, [make_profile("a")])
    assert asyncio.run(selector_for(pool).find_match(pool.get("a"))) is None
    assert pool.get("a").state == ParticipantState.SEARCHING


def test_unavailable_requester_gets_nothing(pool, trio):
    join_all(pool, trio)
    pool.set_state(["a"], ParticipantState.IN_CALL)
    assert asyncio.run(selector_for(pool).find_match(pool.get("a"))) is None


def test_concurrent_searches_never_share_a_partner(pool):
    a = make_profile("a", goals=["hiring"])
    b = make_profile("b", goals=["hiring"])
    c = make_profile("c", skills=["hiring"])
    join_all(pool, [a, b, c])
    selector = selector_for(pool)

    async def race():
        return await asyncio.gather(selector.find_match(pool.get("a")), selector.find_match(pool.get("b")))

    first, second = asyncio.run(race())
    matches = [m for m in (first, second) if m is not None]
    assert len(matches) == 1
    assert matches[0].partner_id == "c"
    assert pool.get("b").state == ParticipantState.SEARCHING


def test_claim_conflicts_are_bounded():
    pool = NeverClaimPool()
    join_all(pool, [make_profile("a"), make_profile("b")])
    assert asyncio.run(selector_for(pool, retries=2).find_match(pool.get("a"))) is None
    assert pool.attempts == 2
    assert pool.get("a").state == ParticipantState.SEARCHING


def test_every_partner_before_any_repeat(pool):
    profiles = [make_profile(f"p{i}") for i in range(5)]
    join_all(pool, profiles)
    selector = selector_for(pool)
    me = pool.get("p0")

    async def rotate(rounds):
        seen = []
        for _ in range(rounds):
            candidate = await selector.find_match(me)
            assert candidate is not None
            seen.append((candidate.partner_id, candidate.is_repeat))
            finish(pool, candidate)
        return seen

    seen = asyncio.run(rotate(6))
    first_round = [pid for pid, _ in seen[:4]]
    assert sorted(first_round) == ["p1", "p2", "p3", "p4"]
    assert not any(repeat for _, repeat in seen[:4])
    assert seen[4][1] is True
    assert seen[4][0] != seen[3][0]
