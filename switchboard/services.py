"""
Service layer for call records.

Creates calls from provider webhooks, ends them, and applies provider
termination callbacks. The provider's view of whether a leg is alive always
wins: a termination callback ends the call whatever state it is in.
"""

from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from switchboard import events, metrics
from switchboard.claims import ClaimLedger
from switchboard.db_models import (
    CallDirection,
    CallStatus,
    DBCall,
    OWNED_STATUSES,
    RingEventType,
    utcnow,
)
from switchboard.errors import AgentNotEligible, ClaimConflict, NotFound, StaleState
from switchboard.logging_config import get_logger
from switchboard.parking import ParkCoordinator
from switchboard.presence import PresenceRegistry
from switchboard.ringing import RingBroadcaster

logger = get_logger(__name__)


class CallService:
    """Service for managing calls."""

    @staticmethod
    def get_call(db: Session, call_id: int) -> DBCall:
        call = db.get(DBCall, call_id)
        if call is None:
            raise NotFound("Call", call_id)
        return call

    @staticmethod
    def get_call_by_ref(db: Session, provider_call_ref: str) -> Optional[DBCall]:
        return db.query(DBCall).filter(DBCall.provider_call_ref == provider_call_ref).first()

    @staticmethod
    def list_calls(
        db: Session,
        status: Optional[CallStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[DBCall]:
        """List calls, newest first, with optional status filtering."""
        query = db.query(DBCall)
        if status:
            query = query.filter(DBCall.status == status)
        return query.order_by(DBCall.id.desc()).offset(skip).limit(limit).all()

    @staticmethod
    def create_inbound(
        db: Session,
        provider_call_ref: str,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
    ) -> tuple[DBCall, bool]:
        """
        Record a new inbound call in RINGING.

        Idempotent on the provider reference: a retried webhook returns the
        existing call and ``created=False``.
        """
        existing = CallService.get_call_by_ref(db, provider_call_ref)
        if existing is not None:
            return existing, False

        call = DBCall(
            provider_call_ref=provider_call_ref,
            direction=CallDirection.INBOUND,
            status=CallStatus.RINGING,
            from_number=from_number,
            to_number=to_number,
        )
        db.add(call)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return CallService.get_call_by_ref(db, provider_call_ref), False
        db.refresh(call)

        logger.info("inbound_call_created", call_id=call.id, provider_call_ref=provider_call_ref, from_number=from_number)
        return call, True

    @staticmethod
    def create_outbound(db: Session, agent_id: str, to_number: str, provider_call_ref: str) -> DBCall:
        """
        Record an agent-initiated call. The initiator claims it straight away,
        so it goes through the same ledger as an inbound answer.
        """
        if not PresenceRegistry.is_eligible(db, agent_id):
            PresenceRegistry.get_presence(db, agent_id)
            raise AgentNotEligible(agent_id)

        existing = CallService.get_call_by_ref(db, provider_call_ref)
        if existing is not None:
            return existing

        call = DBCall(
            provider_call_ref=provider_call_ref,
            direction=CallDirection.OUTBOUND,
            status=CallStatus.RINGING,
            to_number=to_number,
        )
        db.add(call)
        db.commit()
        db.refresh(call)
        call_id = call.id

        result = ClaimLedger.claim(db, call_id, agent_id)
        if not result.won:
            # Agent took another call in the meantime.
            db.execute(
                update(DBCall)
                .where(DBCall.id == call_id)
                .where(DBCall.status == CallStatus.RINGING)
                .values(status=CallStatus.MISSED, ended_at=utcnow(), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            raise AgentNotEligible(agent_id)

        logger.info("outbound_call_created", call_id=call_id, agent_id=agent_id, to_number=to_number)
        return db.get(DBCall, call_id)

    @staticmethod
    def end_call(db: Session, call_id: int, agent_id: str) -> bool:
        """
        Owner hangs up. Returns False if the call had already ended.
        """
        call = CallService.get_call(db, call_id)
        if call.status not in OWNED_STATUSES:
            if call.status in (CallStatus.COMPLETED, CallStatus.ABANDONED, CallStatus.MISSED):
                return False
            raise StaleState(f"Call '{call_id}' is {call.status.value}, not connected")
        if call.owner_agent_id != agent_id:
            raise ClaimConflict(call_id, call.owner_agent_id)

        return CallService._complete(db, call_id, agent_id, reason="agent_hangup")

    @staticmethod
    def _complete(db: Session, call_id: int, owner_agent_id: Optional[str], reason: str) -> bool:
        now = utcnow()
        result = db.execute(
            update(DBCall)
            .where(DBCall.id == call_id)
            .where(DBCall.status.in_(OWNED_STATUSES))
            .values(status=CallStatus.COMPLETED, ended_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            return False
        PresenceRegistry.release_call(db, owner_agent_id, call_id)
        events.emit(db, call_id, RingEventType.ENDED, actor_agent_id=owner_agent_id)
        db.commit()
        logger.info("call_completed", call_id=call_id, agent_id=owner_agent_id, reason=reason)
        return True

    @staticmethod
    def handle_provider_termination(db: Session, provider_call_ref: str, provider_status: str) -> Optional[CallStatus]:
        """
        Apply a provider "this leg is gone" callback.

        Each branch is a conditional transition; if a concurrent claim or
        unpark moved the call first, the new state is re-read and ended
        instead. Returns the call's resulting status, or None when the
        reference matches no call (logged and ignored).
        """
        call = CallService.get_call_by_ref(db, provider_call_ref)
        if call is None:
            metrics.provider_callbacks_ignored.labels(callback="call_status").inc()
            logger.info("termination_for_unknown_call", provider_call_ref=provider_call_ref, status=provider_status)
            return None
        call_id = call.id

        for _ in range(3):
            db.expire_all()
            call = CallService.get_call(db, call_id)
            status = call.status
            if status == CallStatus.RINGING:
                done = RingBroadcaster.cancel_ring(db, call_id, reason="caller_abandoned")
            elif status in OWNED_STATUSES:
                done = CallService._complete(db, call_id, call.owner_agent_id, reason=f"provider_{provider_status}")
            elif status == CallStatus.PARKED:
                done = ParkCoordinator.handle_parked_leg_ended(db, provider_call_ref)
            else:
                logger.debug("termination_for_ended_call", call_id=call_id, status=status.value)
                done = True
            if done:
                break

        db.expire_all()
        return CallService.get_call(db, call_id).status
