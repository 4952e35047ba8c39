"""Tests for the claim ledger."""

import threading

import pytest

from switchboard import events
from switchboard.claims import ClaimLedger
from switchboard.db_models import CallStatus, DBAgentPresence, DBCall, DBClaimRecord, RingEventType
from switchboard.errors import NotFound
from switchboard.parking import ParkCoordinator
from switchboard.presence import PresenceRegistry
from switchboard.reconciliation import fold
from switchboard.ringing import RingBroadcaster
from switchboard.services import CallService


def test_first_claim_wins_and_binds_agent(db, make_agents, ring_call):
    make_agents("alice", "bob")
    call_id = ring_call()

    result = ClaimLedger.claim(db, call_id, "alice")

    assert result.won is True
    assert result.owner_agent_id == "alice"
    db.expire_all()
    call = db.get(DBCall, call_id)
    assert call.status == CallStatus.ACTIVE
    assert call.owner_agent_id == "alice"
    assert call.answered_at is not None
    assert db.get(DBAgentPresence, "alice").current_call_id == call_id


def test_second_claim_loses_with_owner(db, make_agents, ring_call):
    make_agents("alice", "bob")
    call_id = ring_call()
    ClaimLedger.claim(db, call_id, "alice")

    result = ClaimLedger.claim(db, call_id, "bob")

    assert result.won is False
    assert result.owner_agent_id == "alice"
    db.expire_all()
    assert db.get(DBAgentPresence, "bob").current_call_id is None
    assert db.query(DBClaimRecord).filter(DBClaimRecord.call_id == call_id).count() == 1


def test_repeat_claim_by_owner_is_a_win(db, make_agents, ring_call):
    make_agents("alice")
    call_id = ring_call()
    ClaimLedger.claim(db, call_id, "alice")

    assert ClaimLedger.claim(db, call_id, "alice").won is True


def test_claim_after_park_is_not_found(db, provider, make_agents, ring_call):
    make_agents("alice", "bob")
    call_id = ring_call()
    ClaimLedger.claim(db, call_id, "alice")
    ParkCoordinator.park(db, provider, call_id, "alice")

    with pytest.raises(NotFound):
        ClaimLedger.claim(db, call_id, "alice")
    db.expire_all()
    assert db.get(DBAgentPresence, "alice").current_call_id is None


def test_claim_after_transfer_to_another_agent_is_lost(db, provider, make_agents, ring_call):
    make_agents("alice", "bob")
    call_id = ring_call()
    ClaimLedger.claim(db, call_id, "alice")
    parked = ParkCoordinator.park(db, provider, call_id, "alice")
    ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")

    # Still ringing through to bob.
    during = ClaimLedger.claim(db, call_id, "alice")
    assert during.won is False
    assert during.owner_agent_id == "bob"

    ParkCoordinator.complete_transfer(db, call_id, "bob")
    after = ClaimLedger.claim(db, call_id, "alice")
    assert after.won is False
    assert after.owner_agent_id == "bob"
    assert ClaimLedger.claim(db, call_id, "bob").won is True
    db.expire_all()
    assert db.get(DBAgentPresence, "alice").current_call_id is None
    assert db.get(DBAgentPresence, "bob").current_call_id == call_id



def test_claim_unknown_call(db, make_agents):
    make_agents("alice")
    with pytest.raises(NotFound):
        ClaimLedger.claim(db, 999, "alice")


def test_claim_unknown_agent(db, make_agents, ring_call):
    make_agents("alice")
    call_id = ring_call()
    with pytest.raises(NotFound):
        ClaimLedger.claim(db, call_id, "mallory")


def test_claim_by_agent_not_rung(db, make_agents, ring_call):
    make_agents("alice")
    call_id = ring_call()
    make_agents("late")  # became available after the ring started

    with pytest.raises(NotFound):
        ClaimLedger.claim(db, call_id, "late")


def test_claim_after_caller_hung_up(db, make_agents, ring_call):
    make_agents("alice")
    call_id = ring_call()
    RingBroadcaster.cancel_ring(db, call_id)

    with pytest.raises(NotFound):
        ClaimLedger.claim(db, call_id, "alice")
    assert db.query(DBClaimRecord).count() == 0


def test_busy_agent_cannot_win(db, make_agents, ring_call):
    make_agents("alice", "bob")
    first = ring_call()
    second = ring_call()
    ClaimLedger.claim(db, first, "alice")

    result = ClaimLedger.claim(db, second, "alice")

    assert result.won is False
    db.expire_all()
    assert db.get(DBCall, second).status == CallStatus.RINGING
    assert db.get(DBAgentPresence, "alice").current_call_id == first
    # Still up for grabs.
    assert ClaimLedger.claim(db, second, "bob").won is True


def test_concurrent_claims_have_exactly_one_winner(file_session_factory):
    agent_ids = [f"agent-{n}" for n in range(8)]
    setup = file_session_factory()
    for agent_id in agent_ids:
        PresenceRegistry.register_agent(setup, agent_id)
        PresenceRegistry.set_available(setup, agent_id, True)
    call, _ = CallService.create_inbound(setup, "CA-race", from_number="+15550001111")
    RingBroadcaster.start_ring(setup, call)
    call_id = call.id
    setup.close()

    barrier = threading.Barrier(len(agent_ids))
    results = {}
    errors = []

    def attempt(agent_id):
        session = file_session_factory()
        try:
            barrier.wait()
            results[agent_id] = ClaimLedger.claim(session, call_id, agent_id)
        except Exception as e:  # surfaced by the assertion below
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(agent_id,)) for agent_id in agent_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    winners = [agent_id for agent_id, r in results.items() if r.won]
    assert len(winners) == 1
    winner = winners[0]
    assert all(r.owner_agent_id == winner for r in results.values())

    check = file_session_factory()
    try:
        assert check.query(DBClaimRecord).filter(DBClaimRecord.call_id == call_id).count() == 1
        assert check.get(DBCall, call_id).owner_agent_id == winner
        busy = [a.agent_id for a in check.query(DBAgentPresence).filter(DBAgentPresence.current_call_id.isnot(None))]
        assert busy == [winner]
    finally:
        check.close()


def test_three_agents_two_race_third_is_retracted(file_session_factory):
    setup = file_session_factory()
    for agent_id in ("a", "b", "c"):
        PresenceRegistry.register_agent(setup, agent_id)
        PresenceRegistry.set_available(setup, agent_id, True)
    call, _ = CallService.create_inbound(setup, "CA-three", from_number="+15552223333")
    assert RingBroadcaster.start_ring(setup, call) == ["a", "b", "c"]
    call_id = call.id
    setup.close()

    barrier = threading.Barrier(2)
    results = {}

    def attempt(agent_id):
        session = file_session_factory()
        try:
            barrier.wait()
            results[agent_id] = ClaimLedger.claim(session, call_id, agent_id)
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(agent_id,)) for agent_id in ("a", "b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(r.won for r in results.values()) == [False, True]
    winner = next(agent_id for agent_id, r in results.items() if r.won)
    loser = "b" if winner == "a" else "a"

    check = file_session_factory()
    try:
        for agent_id in (loser, "c"):
            view = fold(events.events_for_agent(check, agent_id), agent_id)
            assert view.incoming == {}
            assert view.active_call_id is None
        winner_view = fold(events.events_for_agent(check, winner), winner)
        assert winner_view.active_call_id == call_id

        answered = [
            e for e in events.events_for_call(check, call_id) if e.event_type == RingEventType.ANSWERED
        ]
        assert {e.agent_id for e in answered} == {"a", "b", "c"}
        assert {e.actor_agent_id for e in answered} == {winner}
    finally:
        check.close()
