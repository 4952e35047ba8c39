"""
Ring broadcaster: offer an inbound call to every eligible agent, then retract it.

A ring ends exactly once, through one conditional ``ringing -> X`` update:
either a claim wins (``active``), or the timeout, caller hang-up or
all-declined path marks it ``missed``. Whoever loses that update does nothing.
"""

from typing import List

from kombu.exceptions import OperationalError as BrokerError
from sqlalchemy import update
from sqlalchemy.orm import Session

from switchboard import events, metrics
from switchboard.config import config
from switchboard.db_models import (
    CallStatus,
    DBCall,
    DBRingAssignment,
    DBRingEvent,
    RingEventType,
    utcnow,
)
from switchboard.errors import NotFound
from switchboard.logging_config import get_logger
from switchboard.presence import PresenceRegistry

logger = get_logger(__name__)


def schedule_ring_timeout(call_id: int, countdown: int) -> None:
    """Queue the ring timeout. The periodic sweep covers a lost task."""
    from switchboard.celery_tasks import expire_ring_task

    try:
        expire_ring_task.apply_async(args=[call_id], countdown=countdown)
    except BrokerError as e:
        logger.warning("ring_timeout_not_scheduled", call_id=call_id, error=str(e))


class RingBroadcaster:
    """Service for ringing agents."""

    @staticmethod
    def assigned_agents(db: Session, call_id: int) -> List[str]:
        rows = (
            db.query(DBRingAssignment.agent_id)
            .filter(DBRingAssignment.call_id == call_id)
            .order_by(DBRingAssignment.id)
            .all()
        )
        return [row.agent_id for row in rows]

    @staticmethod
    def is_assigned(db: Session, call_id: int, agent_id: str) -> bool:
        return (
            db.query(DBRingAssignment.id)
            .filter(DBRingAssignment.call_id == call_id, DBRingAssignment.agent_id == agent_id)
            .first()
            is not None
        )

    @staticmethod
    def start_ring(db: Session, call: DBCall, timeout: int = None) -> List[str]:
        """
        Snapshot eligible agents and offer them the call.

        Returns the agents to alert. With nobody eligible the call is missed
        straight away and the caller should be sent to voicemail.
        """
        timeout = config.RING_TIMEOUT_SECONDS if timeout is None else timeout
        eligible = PresenceRegistry.eligible_agents(db)

        if not eligible:
            RingBroadcaster._end_ring(db, call.id, reason="no_agents")
            return []

        for agent_id in eligible:
            db.add(DBRingAssignment(call_id=call.id, agent_id=agent_id))
        events.emit_each(
            db,
            call.id,
            RingEventType.RING_START,
            eligible,
            caller_number=call.from_number,
        )
        db.commit()

        schedule_ring_timeout(call.id, countdown=timeout)
        metrics.rings_started.inc()
        logger.info("ring_started", call_id=call.id, agents=eligible, timeout=timeout)
        return eligible

    @staticmethod
    def announce_answered(db: Session, call_id: int, winner_agent_id: str) -> None:
        """
        Tell every assigned agent who won. Joins the claim's transaction.

        For everyone but the winner this retracts the incoming call exactly
        like ring_cancel does.
        """
        recipients = RingBroadcaster.assigned_agents(db, call_id)
        if winner_agent_id not in recipients:
            recipients.append(winner_agent_id)
        events.emit_each(db, call_id, RingEventType.ANSWERED, recipients, actor_agent_id=winner_agent_id)

    @staticmethod
    def expire_ring(db: Session, call_id: int) -> bool:
        """Ring timeout: missed if still ringing. Safe to run more than once."""
        return RingBroadcaster._end_ring(db, call_id, reason="timeout")

    @staticmethod
    def cancel_ring(db: Session, call_id: int, reason: str = "caller_abandoned") -> bool:
        """
        Caller hung up (or the provider gave up) while ringing.

        Wins over a claim that has not committed yet; that claim's own
        ``ringing -> active`` update then matches nothing and it fails.
        """
        return RingBroadcaster._end_ring(db, call_id, reason=reason)

    @staticmethod
    def decline(db: Session, call_id: int, agent_id: str) -> bool:
        """
        One agent turns the call down. Only that agent stops ringing.

        Returns False when it changed nothing (call no longer ringing, or
        already declined by this agent).
        """
        call = db.get(DBCall, call_id)
        if call is None:
            raise NotFound("Call", call_id)
        if call.status != CallStatus.RINGING:
            return False
        if not RingBroadcaster.is_assigned(db, call_id, agent_id):
            raise NotFound("Ring assignment", f"{call_id}/{agent_id}")

        already = (
            db.query(DBRingEvent.id)
            .filter(
                DBRingEvent.call_id == call_id,
                DBRingEvent.agent_id == agent_id,
                DBRingEvent.event_type == RingEventType.DECLINED,
            )
            .first()
        )
        if already is not None:
            return False

        events.emit(db, call_id, RingEventType.DECLINED, agent_id=agent_id, actor_agent_id=agent_id)
        db.commit()
        logger.info("ring_declined", call_id=call_id, agent_id=agent_id)

        declined = {
            row.agent_id
            for row in db.query(DBRingEvent.agent_id).filter(
                DBRingEvent.call_id == call_id,
                DBRingEvent.event_type == RingEventType.DECLINED,
            )
        }
        if set(RingBroadcaster.assigned_agents(db, call_id)) <= declined:
            RingBroadcaster._end_ring(db, call_id, reason="all_declined")
        return True

    @staticmethod
    def _end_ring(db: Session, call_id: int, reason: str) -> bool:
        now = utcnow()
        result = db.execute(
            update(DBCall)
            .where(DBCall.id == call_id)
            .where(DBCall.status == CallStatus.RINGING)
            .values(status=CallStatus.MISSED, ended_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            logger.debug("ring_already_resolved", call_id=call_id, reason=reason)
            return False

        events.emit_each(db, call_id, RingEventType.RING_CANCEL, RingBroadcaster.assigned_agents(db, call_id))
        db.commit()

        metrics.calls_missed.labels(reason=reason).inc()
        logger.info("ring_ended_missed", call_id=call_id, reason=reason)
        return True
