"""
Client-side reconciliation of the ring/change event log.

An agent's screen is a fold over the events addressed to it (or to everyone):
what is ringing for me, what am I on, what is in the parking lot. The fold
is a pure function of the ordered log, so two clients that have seen the
same events show the same thing, and replaying an event changes nothing.

Usage:
    view = fold(feed.events, agent_id="alice")
    view = fold(next_feed.events, agent_id="alice", view=view)  # resume from view.cursor
"""

import copy
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Set

from switchboard.db_models import RingEventType
from switchboard.models import AgentViewResponse, IncomingCallView, ParkedCallView


@dataclass
class AgentView:
    """One agent's derived view of the switchboard."""

    agent_id: str
    cursor: int = 0
    incoming: Dict[int, IncomingCallView] = field(default_factory=dict)
    active_call_id: Optional[int] = None
    parked: Dict[int, ParkedCallView] = field(default_factory=dict)
    # Calls whose ring is over for this agent; a late ring_start for them is ignored.
    resolved: Set[int] = field(default_factory=set)

    def copy(self) -> "AgentView":
        return copy.deepcopy(self)

    def to_response(self) -> AgentViewResponse:
        return AgentViewResponse(
            agent_id=self.agent_id,
            cursor=self.cursor,
            incoming=sorted(self.incoming.values(), key=lambda c: c.call_id),
            active_call_id=self.active_call_id,
            parked=sorted(self.parked.values(), key=lambda p: p.parked_call_id),
        )


def _event_type(event) -> RingEventType:
    return RingEventType(event.event_type)


def _resolve(view: AgentView, call_id: int) -> None:
    view.incoming.pop(call_id, None)
    view.resolved.add(call_id)


def _on_ring_start(view: AgentView, event) -> None:
    if event.call_id in view.resolved or event.call_id == view.active_call_id:
        return
    view.incoming[event.call_id] = IncomingCallView(call_id=event.call_id, caller_number=event.caller_number)


def _on_ring_cancel(view: AgentView, event) -> None:
    _resolve(view, event.call_id)


def _on_answered(view: AgentView, event) -> None:
    _resolve(view, event.call_id)
    if event.actor_agent_id == view.agent_id:
        view.active_call_id = event.call_id


def _on_declined(view: AgentView, event) -> None:
    _resolve(view, event.call_id)


def _on_transfer_start(view: AgentView, event) -> None:
    view.incoming[event.call_id] = IncomingCallView(
        call_id=event.call_id,
        caller_number=event.caller_number,
        transfer=True,
    )


def _on_parked(view: AgentView, event) -> None:
    if view.active_call_id == event.call_id:
        view.active_call_id = None
    if event.parked_call_id is None:
        return
    view.parked[event.parked_call_id] = ParkedCallView(
        parked_call_id=event.parked_call_id,
        call_id=event.call_id,
        parked_by_agent_id=event.actor_agent_id,
        caller_number=event.caller_number,
        parked_at=event.created_at,
    )


def _on_unparked(view: AgentView, event) -> None:
    if event.parked_call_id is not None:
        view.parked.pop(event.parked_call_id, None)


def _on_ended(view: AgentView, event) -> None:
    _resolve(view, event.call_id)
    if view.active_call_id == event.call_id:
        view.active_call_id = None
    for parked_call_id in [p.parked_call_id for p in view.parked.values() if p.call_id == event.call_id]:
        del view.parked[parked_call_id]


_HANDLERS = {
    RingEventType.RING_START: _on_ring_start,
    RingEventType.RING_CANCEL: _on_ring_cancel,
    RingEventType.ANSWERED: _on_answered,
    RingEventType.DECLINED: _on_declined,
    RingEventType.TRANSFER_START: _on_transfer_start,
    RingEventType.PARKED: _on_parked,
    RingEventType.UNPARKED: _on_unparked,
    RingEventType.ENDED: _on_ended,
}


def apply_event(view: AgentView, event) -> AgentView:
    """
    Return the view after one event; ``view`` itself is not modified.

    Events at or below the cursor were already applied and are skipped.
    Events addressed to a different agent only advance the cursor.
    """
    if event.id <= view.cursor:
        return view
    view = view.copy()
    view.cursor = event.id
    if event.agent_id is not None and event.agent_id != view.agent_id:
        return view
    _HANDLERS[_event_type(event)](view, event)
    return view


def fold(events: Iterable, agent_id: str, view: Optional[AgentView] = None) -> AgentView:
    """Reduce events (any order; sorted by id here) onto ``view``."""
    view = view or AgentView(agent_id=agent_id)
    for event in sorted(events, key=lambda e: e.id):
        view = apply_event(view, event)
    return view
