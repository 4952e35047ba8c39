"""Ring/change event log.

Writers only ever append; nothing updates or deletes an event. Appends join the
caller's transaction, so an event is visible exactly when the state change it
describes is.
"""

from typing import Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from switchboard.db_models import DBRingEvent, RingEventType


def emit(
    db: Session,
    call_id: int,
    event_type: RingEventType,
    agent_id: Optional[str] = None,
    actor_agent_id: Optional[str] = None,
    parked_call_id: Optional[int] = None,
    caller_number: Optional[str] = None,
) -> DBRingEvent:
    """Append one event. ``agent_id=None`` addresses every agent."""
    event = DBRingEvent(
        call_id=call_id,
        agent_id=agent_id,
        event_type=event_type,
        actor_agent_id=actor_agent_id,
        parked_call_id=parked_call_id,
        caller_number=caller_number,
    )
    db.add(event)
    return event


def emit_each(
    db: Session,
    call_id: int,
    event_type: RingEventType,
    agent_ids: Iterable[str],
    actor_agent_id: Optional[str] = None,
    caller_number: Optional[str] = None,
) -> List[DBRingEvent]:
    """Append the same event once per recipient."""
    return [
        emit(
            db,
            call_id,
            event_type,
            agent_id=agent_id,
            actor_agent_id=actor_agent_id,
            caller_number=caller_number,
        )
        for agent_id in agent_ids
    ]


def events_for_agent(db: Session, agent_id: str, after: int = 0, limit: int = 500) -> List[DBRingEvent]:
    """Events addressed to ``agent_id`` or to everyone, oldest first, past the cursor."""
    return (
        db.query(DBRingEvent)
        .filter(DBRingEvent.id > after)
        .filter(or_(DBRingEvent.agent_id == agent_id, DBRingEvent.agent_id.is_(None)))
        .order_by(DBRingEvent.id)
        .limit(limit)
        .all()
    )


def events_for_call(db: Session, call_id: int) -> List[DBRingEvent]:
    return (
        db.query(DBRingEvent)
        .filter(DBRingEvent.call_id == call_id)
        .order_by(DBRingEvent.id)
        .all()
    )
