"""
Claim ledger: exactly one owner per call.

The whole decision is the INSERT into ``call_claims`` (unique on call_id).
No "is it claimed yet?" read comes before it: two agents
answering in the same instant both attempt the insert and the store picks one.
"""

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from switchboard import metrics
from switchboard.database import run_with_store_retry
from switchboard.db_models import (
    CallDirection,
    CallStatus,
    DBAgentPresence,
    DBCall,
    DBClaimRecord,
    OWNED_STATUSES,
    utcnow,
)
from switchboard.errors import NotFound
from switchboard.logging_config import get_logger
from switchboard.models import ClaimResponse
from switchboard.presence import PresenceRegistry
from switchboard.ringing import RingBroadcaster

logger = get_logger(__name__)


class ClaimLedger:
    """Service for claiming calls."""

    @staticmethod
    def claim(db: Session, call_id: int, agent_id: str) -> ClaimResponse:
        """
        Try to become the owner of a ringing call.

        Returns ``won=False`` when another agent holds the call now (a repeat
        claim by the current owner of an active call returns ``won=True``).
        Raises NotFound for an unknown call or agent, or a call that is no
        longer answerable: missed, parked or over.
        Transient store failures are retried within the ring timeout, then
        StoreUnreachable is raised.
        """
        return run_with_store_retry(db, lambda: ClaimLedger._attempt(db, call_id, agent_id))

    @staticmethod
    def _attempt(db: Session, call_id: int, agent_id: str) -> ClaimResponse:
        call = db.get(DBCall, call_id)
        if call is None:
            raise NotFound("Call", call_id)
        if db.get(DBAgentPresence, agent_id) is None:
            raise NotFound("Agent", agent_id)

        if call.status != CallStatus.RINGING:
            return ClaimLedger._settled(call, agent_id)

        if call.direction == CallDirection.INBOUND and not RingBroadcaster.is_assigned(db, call_id, agent_id):
            raise NotFound("Ring assignment", f"{call_id}/{agent_id}")

        db.add(DBClaimRecord(call_id=call_id, agent_id=agent_id))
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            # The winner has committed; the rollback expired `call`, so this re-reads it.
            return ClaimLedger._settled(call, agent_id)

        now = utcnow()
        result = db.execute(
            update(DBCall)
            .where(DBCall.id == call_id)
            .where(DBCall.status == CallStatus.RINGING)
            .values(status=CallStatus.ACTIVE, owner_agent_id=agent_id, answered_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Ring ended (timeout / caller hung up) between our read and our write.
            db.rollback()
            metrics.claims.labels(outcome="expired").inc()
            logger.info("claim_expired", call_id=call_id, agent_id=agent_id)
            raise NotFound("Ringing call", call_id)

        if not PresenceRegistry.bind_call(db, agent_id, call_id):
            # Claimant picked up something else since the ring started.
            db.rollback()
            metrics.claims.labels(outcome="agent_busy").inc()
            logger.info("claim_refused_agent_busy", call_id=call_id, agent_id=agent_id)
            return ClaimResponse(won=False, call_id=call_id, owner_agent_id=None)

        RingBroadcaster.announce_answered(db, call_id, agent_id)
        db.commit()

        metrics.claims.labels(outcome="won").inc()
        logger.info("claim_won", call_id=call_id, agent_id=agent_id)
        return ClaimResponse(won=True, call_id=call_id, owner_agent_id=agent_id)

    @staticmethod
    def _settled(call: DBCall, agent_id: str) -> ClaimResponse:
        """
        Outcome of a claim on a call that is no longer ringing, judged by who
        holds the call now (a park or transfer moves it away from the first
        claimant).
        """
        call_id = call.id
        owner = call.owner_agent_id
        if call.status == CallStatus.ACTIVE and owner == agent_id:
            return ClaimResponse(won=True, call_id=call_id, owner_agent_id=owner)
        if call.status not in OWNED_STATUSES or owner is None:
            # Missed, parked or over: nothing left to answer.
            raise NotFound("Ringing call", call_id)
        metrics.claims.labels(outcome="lost").inc()
        logger.info("claim_lost", call_id=call_id, agent_id=agent_id, owner_agent_id=owner)
        return ClaimResponse(won=False, call_id=call_id, owner_agent_id=owner)
