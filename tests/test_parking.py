"""Tests for parking, retrieval and the stale-call sweep."""

import threading
from datetime import timedelta

import pytest

from switchboard import events
from switchboard.claims import ClaimLedger
from switchboard.db_models import (
    CallStatus,
    DBAgentPresence,
    DBCall,
    DBParkedCall,
    RingEventType,
    utcnow,
)
from switchboard.errors import AgentNotEligible, ClaimConflict, NotFound, ProviderUnavailable, StaleState
from switchboard.parking import ParkCoordinator
from switchboard.presence import PresenceRegistry
from switchboard.reconciliation import fold
from switchboard.ringing import RingBroadcaster
from switchboard.services import CallService


@pytest.fixture
def active_call(db, make_agents, ring_call):
    """alice is on an answered call; bob and carol are free."""
    make_agents("alice", "bob", "carol")
    call_id = ring_call(call_ref="CA-park")
    ClaimLedger.claim(db, call_id, "alice")
    return call_id


def _current_call(db, agent_id):
    db.expire_all()
    return db.get(DBAgentPresence, agent_id).current_call_id


def test_park_frees_agent_and_lists_call(db, provider, active_call):
    result = ParkCoordinator.park(db, provider, active_call, "alice")

    db.expire_all()
    call = db.get(DBCall, active_call)
    assert call.status == CallStatus.PARKED
    assert call.owner_agent_id is None
    assert _current_call(db, "alice") is None

    parked = ParkCoordinator.list_parked(db)
    assert [p.id for p in parked] == [result.parked_call_id]
    assert parked[0].parked_by_agent_id == "alice"
    assert parked[0].hold_ref == result.hold_ref

    call_ref, twiml = provider.redirects[-1]
    assert call_ref == "CA-park"
    assert result.hold_ref in twiml
    assert "<Conference" in twiml


def test_park_broadcasts_to_everyone(db, provider, active_call):
    result = ParkCoordinator.park(db, provider, active_call, "alice")

    for agent_id in ("alice", "bob", "carol"):
        view = fold(events.events_for_agent(db, agent_id), agent_id)
        assert list(view.parked) == [result.parked_call_id]
    assert fold(events.events_for_agent(db, "alice"), "alice").active_call_id is None


def test_park_requires_owner(db, provider, active_call):
    with pytest.raises(ClaimConflict):
        ParkCoordinator.park(db, provider, active_call, "bob")
    assert provider.redirects == []


def test_park_requires_active_call(db, provider, make_agents, ring_call):
    make_agents("alice")
    call_id = ring_call()

    with pytest.raises(StaleState):
        ParkCoordinator.park(db, provider, call_id, "alice")


def test_failed_park_leaves_call_untouched(db, provider, active_call):
    provider.fail_redirect = True

    with pytest.raises(ProviderUnavailable):
        ParkCoordinator.park(db, provider, active_call, "alice")

    db.expire_all()
    call = db.get(DBCall, active_call)
    assert call.status == CallStatus.ACTIVE
    assert call.owner_agent_id == "alice"
    assert _current_call(db, "alice") == active_call
    assert db.query(DBParkedCall).count() == 0


def test_park_unpark_round_trip(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")

    result = ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")

    assert result.ok is True
    db.expire_all()
    call = db.get(DBCall, active_call)
    assert call.status == CallStatus.TRANSFERRING
    assert call.owner_agent_id == "bob"
    assert _current_call(db, "bob") == active_call
    assert db.query(DBParkedCall).count() == 0
    assert "<Client>bob</Client>" in provider.redirects[-1][1]

    bob = fold(events.events_for_agent(db, "bob"), "bob")
    assert bob.incoming[active_call].transfer is True
    assert bob.parked == {}
    carol = fold(events.events_for_agent(db, "carol"), "carol")
    assert carol.incoming == {}
    assert carol.parked == {}

    assert ParkCoordinator.complete_transfer(db, active_call, "bob") is True
    db.expire_all()
    call = db.get(DBCall, active_call)
    assert call.status == CallStatus.ACTIVE
    assert call.owner_agent_id == "bob"
    bob = fold(events.events_for_agent(db, "bob"), "bob")
    assert bob.active_call_id == active_call
    assert bob.incoming == {}


def test_complete_transfer_is_idempotent(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")
    ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")

    assert ParkCoordinator.complete_transfer(db, active_call, "bob") is True
    assert ParkCoordinator.complete_transfer(db, active_call, "bob") is False

    with pytest.raises(ClaimConflict):
        ParkCoordinator.complete_transfer(db, active_call, "carol")


def test_second_unpark_is_not_found(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")
    ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")
    redirects = len(provider.redirects)

    with pytest.raises(NotFound):
        ParkCoordinator.unpark(db, provider, parked.parked_call_id, "carol")

    # The loser never touches the provider leg.
    assert len(provider.redirects) == redirects
    assert _current_call(db, "carol") is None
    db.expire_all()
    assert db.get(DBCall, active_call).owner_agent_id == "bob"


def test_park_by_a_unpark_by_b_simultaneous_c(file_session_factory, provider):
    setup = file_session_factory()
    for agent_id in ("a", "b", "c"):
        PresenceRegistry.register_agent(setup, agent_id)
        PresenceRegistry.set_available(setup, agent_id, True)
    call, _ = CallService.create_inbound(setup, "CA-scenario", from_number="+15554445555")
    call_id = call.id
    RingBroadcaster.start_ring(setup, call)
    ClaimLedger.claim(setup, call_id, "a")
    parked_call_id = ParkCoordinator.park(setup, provider, call_id, "a").parked_call_id
    setup.close()

    barrier = threading.Barrier(2)
    outcomes = {}

    def attempt(agent_id):
        session = file_session_factory()
        try:
            barrier.wait()
            outcomes[agent_id] = ParkCoordinator.unpark(session, provider, parked_call_id, agent_id)
        except NotFound as e:
            outcomes[agent_id] = e
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(agent_id,)) for agent_id in ("b", "c")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [agent_id for agent_id, outcome in outcomes.items() if not isinstance(outcome, NotFound)]
    assert len(winners) == 1
    winner = winners[0]
    loser = "c" if winner == "b" else "b"
    assert isinstance(outcomes[loser], NotFound)

    check = file_session_factory()
    try:
        assert check.query(DBParkedCall).count() == 0
        assert check.get(DBCall, call_id).owner_agent_id == winner
        assert check.get(DBAgentPresence, loser).current_call_id is None
        assert check.get(DBAgentPresence, winner).current_call_id == call_id
        assert len([ref for ref, _ in provider.redirects if ref == "CA-scenario"]) == 2  # park + one transfer
    finally:
        check.close()


def test_unpark_to_offline_agent(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")
    PresenceRegistry.set_available(db, "bob", False)

    with pytest.raises(AgentNotEligible):
        ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")

    assert [p.id for p in ParkCoordinator.list_parked(db)] == [parked.parked_call_id]


def test_unpark_to_unknown_agent(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")

    with pytest.raises(NotFound):
        ParkCoordinator.unpark(db, provider, parked.parked_call_id, "mallory")


def test_failed_unpark_restores_parked_call(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")
    provider.fail_redirect = True

    with pytest.raises(ProviderUnavailable):
        ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")

    db.expire_all()
    assert [p.id for p in ParkCoordinator.list_parked(db)] == [parked.parked_call_id]
    call = db.get(DBCall, active_call)
    assert call.status == CallStatus.PARKED
    assert call.owner_agent_id is None
    assert _current_call(db, "bob") is None

    bob = fold(events.events_for_agent(db, "bob"), "bob")
    assert bob.incoming == {}
    assert list(bob.parked) == [parked.parked_call_id]

    # Retrievable again once the provider is back.
    provider.fail_redirect = False
    assert ParkCoordinator.unpark(db, provider, parked.parked_call_id, "carol").ok is True


def test_transfer_not_answered_goes_back_on_hold(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")
    ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")

    hold_ref = ParkCoordinator.fail_transfer(db, active_call)

    assert hold_ref is not None
    db.expire_all()
    assert db.get(DBCall, active_call).status == CallStatus.PARKED
    assert _current_call(db, "bob") is None
    rows = ParkCoordinator.list_parked(db)
    assert len(rows) == 1
    assert rows[0].hold_ref == hold_ref
    assert rows[0].parked_by_agent_id == "alice"
    assert ParkCoordinator.fail_transfer(db, active_call) is None


def test_caller_hangs_up_while_parked(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")

    assert ParkCoordinator.handle_parked_leg_ended(db, "CA-park") is True
    assert ParkCoordinator.handle_parked_leg_ended(db, "CA-park") is False

    db.expire_all()
    assert db.get(DBCall, active_call).status == CallStatus.ABANDONED
    with pytest.raises(NotFound):
        ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")
    view = fold(events.events_for_agent(db, "carol"), "carol")
    assert view.parked == {}


def test_sweep_removes_aged_parked_call(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")

    later = utcnow() + timedelta(seconds=1801)
    result = ParkCoordinator.sweep(db, provider, now=later)

    assert result.abandoned_parked == 1
    db.expire_all()
    assert db.get(DBParkedCall, parked.parked_call_id) is None
    assert db.get(DBCall, active_call).status == CallStatus.ABANDONED
    assert "<Hangup/>" in provider.redirects[-1][1]


def test_sweep_removes_parked_call_whose_leg_ended(db, provider, active_call):
    ParkCoordinator.park(db, provider, active_call, "alice")
    provider.statuses["CA-park"] = "completed"

    result = ParkCoordinator.sweep(db, provider)

    assert result.abandoned_parked == 1
    assert ParkCoordinator.list_parked(db) == []
    ended = [e for e in events.events_for_call(db, active_call) if e.event_type == RingEventType.ENDED]
    assert len(ended) == 1


def test_sweep_keeps_live_parked_call(db, provider, active_call):
    ParkCoordinator.park(db, provider, active_call, "alice")

    assert ParkCoordinator.sweep(db, provider).abandoned_parked == 0
    provider.fail_fetch = True
    assert ParkCoordinator.sweep(db, provider).abandoned_parked == 0
    assert len(ParkCoordinator.list_parked(db)) == 1


def test_sweep_expires_ring_whose_timeout_was_lost(db, make_agents, ring_call, provider):
    make_agents("alice")
    call_id = ring_call()

    assert ParkCoordinator.sweep(db, provider).expired_rings == 0
    later = utcnow() + timedelta(seconds=46)
    assert ParkCoordinator.sweep(db, provider, now=later).expired_rings == 1

    db.expire_all()
    assert db.get(DBCall, call_id).status == CallStatus.MISSED


def test_sweep_ends_transfer_whose_leg_is_gone(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")
    ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")
    provider.statuses["CA-park"] = "completed"

    assert ParkCoordinator.sweep(db, provider).settled_transfers == 0
    result = ParkCoordinator.sweep(db, provider, now=utcnow() + timedelta(days=1))

    assert result.settled_transfers == 1
    db.expire_all()
    call = db.get(DBCall, active_call)
    assert call.status == CallStatus.COMPLETED
    assert call.ended_at is not None
    assert _current_call(db, "bob") is None
    assert ParkCoordinator.list_parked(db) == []
    view = fold(events.events_for_agent(db, "bob"), "bob")
    assert view.incoming == {}
    assert view.active_call_id is None


def test_sweep_reparks_transfer_that_was_never_picked_up(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")
    ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")

    result = ParkCoordinator.sweep(db, provider, now=utcnow() + timedelta(days=1))

    assert result.settled_transfers == 1
    db.expire_all()
    assert db.get(DBCall, active_call).status == CallStatus.PARKED
    assert _current_call(db, "bob") is None
    rows = ParkCoordinator.list_parked(db)
    assert len(rows) == 1
    assert rows[0].parked_by_agent_id == "alice"
    call_ref, twiml = provider.redirects[-1]
    assert call_ref == "CA-park"
    assert rows[0].hold_ref in twiml


def test_sweep_leaves_transfer_alone_when_provider_is_down(db, provider, active_call):
    parked = ParkCoordinator.park(db, provider, active_call, "alice")
    ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")
    provider.fail_fetch = True

    result = ParkCoordinator.sweep(db, provider, now=utcnow() + timedelta(days=1))

    assert result.settled_transfers == 0
    db.expire_all()
    assert db.get(DBCall, active_call).status == CallStatus.TRANSFERRING
    assert _current_call(db, "bob") == active_call


def test_transfer_hands_call_to_target(db, provider, active_call):
    result = ParkCoordinator.transfer(db, provider, active_call, "alice", "bob")

    assert result.target_agent_id == "bob"
    db.expire_all()
    call = db.get(DBCall, active_call)
    assert call.status == CallStatus.TRANSFERRING
    assert call.owner_agent_id == "bob"
    assert _current_call(db, "alice") is None
    assert _current_call(db, "bob") == active_call
    assert ParkCoordinator.list_parked(db) == []
    assert "bob" in provider.redirects[-1][1]

    assert ParkCoordinator.complete_transfer(db, active_call, "bob") is True
    view = fold(events.events_for_agent(db, "carol"), "carol")
    assert view.parked == {}


def test_transfer_to_unavailable_target_leaves_call_with_owner(db, provider, active_call):
    PresenceRegistry.set_available(db, "bob", False)

    with pytest.raises(AgentNotEligible):
        ParkCoordinator.transfer(db, provider, active_call, "alice", "bob")
    with pytest.raises(NotFound):
        ParkCoordinator.transfer(db, provider, active_call, "alice", "mallory")

    db.expire_all()
    assert db.get(DBCall, active_call).owner_agent_id == "alice"
    assert provider.redirects == []


def test_transfer_requires_owner(db, provider, active_call):
    with pytest.raises(ClaimConflict):
        ParkCoordinator.transfer(db, provider, active_call, "carol", "bob")
    assert _current_call(db, "alice") == active_call
