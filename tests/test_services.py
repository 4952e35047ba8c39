"""Tests for call records and provider termination handling."""

import pytest

from switchboard import events
from switchboard.claims import ClaimLedger
from switchboard.db_models import CallDirection, CallStatus, DBAgentPresence, DBCall, RingEventType
from switchboard.errors import AgentNotEligible, ClaimConflict, NotFound, StaleState
from switchboard.parking import ParkCoordinator
from switchboard.presence import PresenceRegistry
from switchboard.services import CallService


def test_create_inbound_is_idempotent(db):
    call, created = CallService.create_inbound(db, "CA100", from_number="+15550001111", to_number="+15559990000")
    again, created_again = CallService.create_inbound(db, "CA100", from_number="+15550001111")

    assert created is True
    assert created_again is False
    assert again.id == call.id
    assert call.status == CallStatus.RINGING
    assert call.direction == CallDirection.INBOUND


def test_list_calls_filters_by_status(db, make_agents, ring_call):
    make_agents("alice")
    first = ring_call()
    second = ring_call()
    ClaimLedger.claim(db, first, "alice")

    db.expire_all()
    assert [c.id for c in CallService.list_calls(db)] == [second, first]
    assert [c.id for c in CallService.list_calls(db, status=CallStatus.RINGING)] == [second]


def test_outbound_call_is_owned_by_initiator(db, make_agents):
    make_agents("alice")

    call = CallService.create_outbound(db, "alice", "+15557778888", "CA-out")

    assert call.direction == CallDirection.OUTBOUND
    assert call.status == CallStatus.ACTIVE
    assert call.owner_agent_id == "alice"
    db.expire_all()
    assert db.get(DBAgentPresence, "alice").current_call_id == call.id


def test_outbound_refused_for_busy_agent(db, make_agents):
    make_agents("alice")
    CallService.create_outbound(db, "alice", "+15557778888", "CA-out-1")

    with pytest.raises(AgentNotEligible):
        CallService.create_outbound(db, "alice", "+15557778889", "CA-out-2")


def test_outbound_unknown_agent(db):
    with pytest.raises(NotFound):
        CallService.create_outbound(db, "ghost", "+15557778888", "CA-out")


def test_end_call_by_owner(db, make_agents, ring_call):
    make_agents("alice", "bob")
    call_id = ring_call()
    ClaimLedger.claim(db, call_id, "alice")

    with pytest.raises(ClaimConflict):
        CallService.end_call(db, call_id, "bob")

    assert CallService.end_call(db, call_id, "alice") is True
    assert CallService.end_call(db, call_id, "alice") is False

    db.expire_all()
    call = db.get(DBCall, call_id)
    assert call.status == CallStatus.COMPLETED
    assert call.ended_at is not None
    assert db.get(DBAgentPresence, "alice").current_call_id is None


def test_end_ringing_call_is_stale(db, make_agents, ring_call):
    make_agents("alice")
    call_id = ring_call()

    with pytest.raises(StaleState):
        CallService.end_call(db, call_id, "alice")


def test_termination_while_ringing_is_missed(db, make_agents, ring_call):
    make_agents("alice", "bob")
    call_id = ring_call(call_ref="CA-term")

    assert CallService.handle_provider_termination(db, "CA-term", "canceled") == CallStatus.MISSED

    cancels = [e for e in events.events_for_call(db, call_id) if e.event_type == RingEventType.RING_CANCEL]
    assert sorted(e.agent_id for e in cancels) == ["alice", "bob"]
    with pytest.raises(NotFound):
        ClaimLedger.claim(db, call_id, "alice")


def test_termination_of_active_call_releases_owner(db, make_agents, ring_call):
    make_agents("alice")
    call_id = ring_call(call_ref="CA-term")
    ClaimLedger.claim(db, call_id, "alice")

    assert CallService.handle_provider_termination(db, "CA-term", "completed") == CallStatus.COMPLETED
    db.expire_all()
    assert db.get(DBAgentPresence, "alice").current_call_id is None
    assert PresenceRegistry.eligible_agents(db) == ["alice"]


def test_termination_while_parked_is_abandoned(db, provider, make_agents, ring_call):
    make_agents("alice")
    call_id = ring_call(call_ref="CA-term")
    ClaimLedger.claim(db, call_id, "alice")
    ParkCoordinator.park(db, provider, call_id, "alice")

    assert CallService.handle_provider_termination(db, "CA-term", "completed") == CallStatus.ABANDONED
    assert ParkCoordinator.list_parked(db) == []


def test_termination_during_transfer_wins(db, provider, make_agents, ring_call):
    make_agents("alice", "bob")
    call_id = ring_call(call_ref="CA-term")
    ClaimLedger.claim(db, call_id, "alice")
    parked = ParkCoordinator.park(db, provider, call_id, "alice")
    ParkCoordinator.unpark(db, provider, parked.parked_call_id, "bob")

    assert CallService.handle_provider_termination(db, "CA-term", "completed") == CallStatus.COMPLETED
    db.expire_all()
    assert db.get(DBAgentPresence, "bob").current_call_id is None
    # Nothing to put back on hold.
    assert ParkCoordinator.fail_transfer(db, call_id) is None


def test_termination_for_unknown_call_is_ignored(db):
    assert CallService.handle_provider_termination(db, "CA-nobody", "completed") is None


def test_termination_twice_is_harmless(db, make_agents, ring_call):
    make_agents("alice")
    ring_call(call_ref="CA-term")

    CallService.handle_provider_termination(db, "CA-term", "canceled")
    assert CallService.handle_provider_termination(db, "CA-term", "completed") == CallStatus.MISSED
