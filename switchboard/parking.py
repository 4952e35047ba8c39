"""
Park/transfer coordinator.

Parking moves the caller's leg into a provider-side hold conference and frees
the agent. Retrieval (unpark) is decided by deleting the parked row: the one
DELETE that reports a deleted row wins, every other attempt gets NotFound and
must not touch the provider leg.

State machine per call::

    ACTIVE(agent) --park--> PARKED --unpark--> TRANSFERRING(target) --pickup--> ACTIVE(target)
                               ^                     |
                               +---- no pickup ------+

Provider termination moves any of these to COMPLETED/ABANDONED and always
wins over an in-flight unpark.
"""

import time
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from switchboard import events, metrics, twiml_builder
from switchboard.config import config
from switchboard.database import run_with_store_retry
from switchboard.db_models import (
    CallStatus,
    DBAgentPresence,
    DBCall,
    DBParkedCall,
    DBRingEvent,
    RingEventType,
    utcnow,
)
from switchboard.errors import (
    AgentNotEligible,
    ClaimConflict,
    NotFound,
    ProviderUnavailable,
    StaleState,
    StoreUnreachable,
)
from switchboard.logging_config import get_logger
from switchboard.models import ParkResponse, SweepResponse, UnparkResponse
from switchboard.presence import PresenceRegistry
from switchboard.ringing import RingBroadcaster
from switchboard.telephony import TelephonyProvider

logger = get_logger(__name__)

_PARKED_COLUMNS = (
    "id",
    "call_id",
    "parked_by_agent_id",
    "hold_ref",
    "provider_call_ref",
    "caller_number",
    "parked_at",
)


def _snapshot(parked: DBParkedCall) -> dict:
    return {name: getattr(parked, name) for name in _PARKED_COLUMNS}


def make_hold_ref(provider_call_ref: str) -> str:
    return f"park-{provider_call_ref}-{int(time.time() * 1000)}"


class ParkCoordinator:
    """Service for parking and retrieving calls."""

    @staticmethod
    def list_parked(db: Session):
        return db.query(DBParkedCall).order_by(DBParkedCall.parked_at, DBParkedCall.id).all()

    @staticmethod
    def park(db: Session, provider: TelephonyProvider, call_id: int, agent_id: str) -> ParkResponse:
        """
        Move the owner's active call into the parking lot.

        The provider redirect happens first; if it fails nothing is written
        and the call stays active with the same owner.
        """
        call = db.get(DBCall, call_id)
        if call is None:
            raise NotFound("Call", call_id)
        if call.status != CallStatus.ACTIVE:
            raise StaleState(f"Call '{call_id}' is {call.status.value}, not active")
        if call.owner_agent_id != agent_id:
            raise ClaimConflict(call_id, call.owner_agent_id)

        provider_call_ref = call.provider_call_ref
        caller_number = call.from_number
        hold_ref = make_hold_ref(provider_call_ref)

        try:
            provider.redirect(provider_call_ref, twiml_builder.build_park_twiml(hold_ref))
        except ProviderUnavailable:
            logger.error("park_redirect_failed", call_id=call_id, agent_id=agent_id)
            raise

        def _record() -> int:
            now = utcnow()
            result = db.execute(
                update(DBCall)
                .where(DBCall.id == call_id)
                .where(DBCall.status == CallStatus.ACTIVE)
                .where(DBCall.owner_agent_id == agent_id)
                .values(status=CallStatus.PARKED, owner_agent_id=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.rollback()
                raise StaleState(f"Call '{call_id}' changed while it was being parked")

            parked = DBParkedCall(
                call_id=call_id,
                parked_by_agent_id=agent_id,
                hold_ref=hold_ref,
                provider_call_ref=provider_call_ref,
                caller_number=caller_number,
                parked_at=now,
            )
            db.add(parked)
            db.flush()
            PresenceRegistry.release_call(db, agent_id, call_id)
            events.emit(
                db,
                call_id,
                RingEventType.PARKED,
                actor_agent_id=agent_id,
                parked_call_id=parked.id,
                caller_number=caller_number,
            )
            db.commit()
            return parked.id

        try:
            parked_call_id = run_with_store_retry(db, _record)
        except StoreUnreachable:
            # Nothing recorded: put the caller back on the agent who parked them.
            try:
                provider.redirect(
                    provider_call_ref,
                    twiml_builder.build_transfer_twiml(agent_id, call_id, config.RING_TIMEOUT_SECONDS),
                )
            except ProviderUnavailable:
                logger.error("park_compensation_failed", call_id=call_id, agent_id=agent_id)
            raise

        metrics.calls_parked.inc()
        logger.info("call_parked", call_id=call_id, agent_id=agent_id, parked_call_id=parked_call_id, hold_ref=hold_ref)
        return ParkResponse(parked_call_id=parked_call_id, call_id=call_id, hold_ref=hold_ref)

    @staticmethod
    def unpark(db: Session, provider: TelephonyProvider, parked_call_id: int, target_agent_id: str) -> UnparkResponse:
        """
        Hand a parked call to one specific agent.

        Raises NotFound if the parked call is gone (already retrieved, swept,
        or the caller hung up), AgentNotEligible if the target is offline or
        busy, ProviderUnavailable if the leg could not be redirected (the
        parked call is then restored).
        """
        parked = db.get(DBParkedCall, parked_call_id)
        if parked is None:
            metrics.unparks.labels(outcome="not_found").inc()
            raise NotFound("Parked call", parked_call_id)
        snapshot = _snapshot(parked)
        call_id = snapshot["call_id"]
        # A failed redirect re-inserts the row under the same id.
        db.expunge(parked)

        if db.get(DBAgentPresence, target_agent_id) is None:
            raise NotFound("Agent", target_agent_id)
        if not PresenceRegistry.is_eligible(db, target_agent_id):
            metrics.unparks.labels(outcome="target_not_eligible").inc()
            raise AgentNotEligible(target_agent_id)

        def _take() -> None:
            result = db.execute(
                delete(DBParkedCall)
                .where(DBParkedCall.id == parked_call_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.rollback()
                metrics.unparks.labels(outcome="not_found").inc()
                logger.info("unpark_lost", parked_call_id=parked_call_id, agent_id=target_agent_id)
                raise NotFound("Parked call", parked_call_id)

            if not PresenceRegistry.bind_call(db, target_agent_id, call_id, require_available=True):
                db.rollback()
                metrics.unparks.labels(outcome="target_not_eligible").inc()
                raise AgentNotEligible(target_agent_id)

            now = utcnow()
            moved = db.execute(
                update(DBCall)
                .where(DBCall.id == call_id)
                .where(DBCall.status == CallStatus.PARKED)
                .values(status=CallStatus.TRANSFERRING, owner_agent_id=target_agent_id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount == 0:
                # Provider already ended the call; its status is authoritative.
                db.rollback()
                metrics.unparks.labels(outcome="call_ended").inc()
                raise NotFound("Parked call", parked_call_id)

            events.emit(
                db,
                call_id,
                RingEventType.TRANSFER_START,
                agent_id=target_agent_id,
                actor_agent_id=target_agent_id,
                parked_call_id=parked_call_id,
                caller_number=snapshot["caller_number"],
            )
            events.emit(
                db,
                call_id,
                RingEventType.UNPARKED,
                actor_agent_id=target_agent_id,
                parked_call_id=parked_call_id,
            )
            db.commit()

        run_with_store_retry(db, _take)

        try:
            provider.redirect(
                snapshot["provider_call_ref"],
                twiml_builder.build_transfer_twiml(target_agent_id, call_id, config.RING_TIMEOUT_SECONDS),
            )
        except ProviderUnavailable:
            metrics.unparks.labels(outcome="provider_failed").inc()
            logger.error("unpark_redirect_failed", parked_call_id=parked_call_id, agent_id=target_agent_id)
            ParkCoordinator._restore(db, snapshot, target_agent_id)
            raise

        metrics.unparks.labels(outcome="ok").inc()
        logger.info("call_unparked", call_id=call_id, parked_call_id=parked_call_id, agent_id=target_agent_id)
        return UnparkResponse(ok=True, call_id=call_id, target_agent_id=target_agent_id)

    @staticmethod
    def _restore(db: Session, snapshot: dict, target_agent_id: str) -> bool:
        """Undo an unpark whose provider redirect failed. Returns False if the call ended meanwhile."""
        call_id = snapshot["call_id"]
        result = db.execute(
            update(DBCall)
            .where(DBCall.id == call_id)
            .where(DBCall.status == CallStatus.TRANSFERRING)
            .where(DBCall.owner_agent_id == target_agent_id)
            .values(status=CallStatus.PARKED, owner_agent_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            logger.warning("unpark_restore_skipped", call_id=call_id, parked_call_id=snapshot["id"])
            return False

        db.add(DBParkedCall(**snapshot))
        PresenceRegistry.release_call(db, target_agent_id, call_id)
        events.emit(db, call_id, RingEventType.RING_CANCEL, agent_id=target_agent_id)
        events.emit(
            db,
            call_id,
            RingEventType.PARKED,
            actor_agent_id=snapshot["parked_by_agent_id"],
            parked_call_id=snapshot["id"],
            caller_number=snapshot["caller_number"],
        )
        db.commit()
        logger.info("unpark_restored", call_id=call_id, parked_call_id=snapshot["id"])
        return True

    @staticmethod
    def transfer(
        db: Session, provider: TelephonyProvider, call_id: int, agent_id: str, target_agent_id: str
    ) -> UnparkResponse:
        """
        Hand the owner's active call straight to another agent.

        This is a park followed by an unpark to the target, so the call passes
        through the parking lot and the same single-winner retrieval applies.
        The target is checked before parking; if it becomes busy in between,
        AgentNotEligible is raised and the call stays parked for anyone to pick up.
        """
        if db.get(DBAgentPresence, target_agent_id) is None:
            raise NotFound("Agent", target_agent_id)
        if not PresenceRegistry.is_eligible(db, target_agent_id):
            raise AgentNotEligible(target_agent_id)

        parked = ParkCoordinator.park(db, provider, call_id, agent_id)
        result = ParkCoordinator.unpark(db, provider, parked.parked_call_id, target_agent_id)
        logger.info("call_transferred", call_id=call_id, agent_id=agent_id, target_agent_id=target_agent_id)
        return result

    @staticmethod
    def complete_transfer(db: Session, call_id: int, agent_id: str) -> bool:

        """
        The target picked up the transferred leg: TRANSFERRING -> ACTIVE.

        No claim is needed; the unpark delete already chose the owner.
        Returns False if the call was already active with this owner.
        """
        call = db.get(DBCall, call_id)
        if call is None:
            raise NotFound("Call", call_id)
        if call.status == CallStatus.ACTIVE and call.owner_agent_id == agent_id:
            return False

        now = utcnow()
        result = db.execute(
            update(DBCall)
            .where(DBCall.id == call_id)
            .where(DBCall.status == CallStatus.TRANSFERRING)
            .where(DBCall.owner_agent_id == agent_id)
            .values(status=CallStatus.ACTIVE, answered_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            db.refresh(call)
            if call.owner_agent_id and call.owner_agent_id != agent_id:
                raise ClaimConflict(call_id, call.owner_agent_id)
            raise StaleState(f"Call '{call_id}' is {call.status.value}, not transferring to '{agent_id}'")

        events.emit(db, call_id, RingEventType.ANSWERED, agent_id=agent_id, actor_agent_id=agent_id)
        db.commit()
        logger.info("transfer_completed", call_id=call_id, agent_id=agent_id)
        return True

    @staticmethod
    def fail_transfer(db: Session, call_id: int) -> Optional[str]:
        """
        The target never picked up: back into the parking lot under a new row.

        Returns the hold conference to send the leg to, or None if the call
        is no longer transferring.
        """
        call = db.get(DBCall, call_id)
        if call is None or call.status != CallStatus.TRANSFERRING:
            return None
        target_agent_id = call.owner_agent_id
        provider_call_ref = call.provider_call_ref
        caller_number = call.from_number

        now = utcnow()
        result = db.execute(
            update(DBCall)
            .where(DBCall.id == call_id)
            .where(DBCall.status == CallStatus.TRANSFERRING)
            .values(status=CallStatus.PARKED, owner_agent_id=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            return None

        last_parked_by = (
            db.query(DBRingEvent.actor_agent_id)
            .filter(DBRingEvent.call_id == call_id, DBRingEvent.event_type == RingEventType.PARKED)
            .order_by(DBRingEvent.id.desc())
            .first()
        )
        hold_ref = make_hold_ref(provider_call_ref)
        parked = DBParkedCall(
            call_id=call_id,
            parked_by_agent_id=(last_parked_by.actor_agent_id if last_parked_by else None) or target_agent_id,
            hold_ref=hold_ref,
            provider_call_ref=provider_call_ref,
            caller_number=caller_number,
            parked_at=now,
        )
        db.add(parked)
        db.flush()
        PresenceRegistry.release_call(db, target_agent_id, call_id)
        events.emit(db, call_id, RingEventType.RING_CANCEL, agent_id=target_agent_id)
        events.emit(
            db,
            call_id,
            RingEventType.PARKED,
            actor_agent_id=parked.parked_by_agent_id,
            parked_call_id=parked.id,
            caller_number=caller_number,
        )
        db.commit()
        logger.info("transfer_unanswered_reparked", call_id=call_id, agent_id=target_agent_id, hold_ref=hold_ref)
        return hold_ref

    @staticmethod
    def handle_parked_leg_ended(db: Session, provider_call_ref: str) -> bool:
        """Caller hung up while on hold."""
        rows = db.query(DBParkedCall).filter(DBParkedCall.provider_call_ref == provider_call_ref).all()
        if not rows:
            metrics.provider_callbacks_ignored.labels(callback="parked_call_status").inc()
            logger.info("parked_leg_ended_no_record", provider_call_ref=provider_call_ref)
            return False
        removed = False
        for snapshot in [_snapshot(row) for row in rows]:
            removed = ParkCoordinator._abandon(db, snapshot, reason="caller_hangup") or removed
        return removed

    @staticmethod
    def _abandon(db: Session, snapshot: dict, reason: str) -> bool:
        result = db.execute(
            delete(DBParkedCall)
            .where(DBParkedCall.id == snapshot["id"])
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            return False

        call_id = snapshot["call_id"]
        now = utcnow()
        db.execute(
            update(DBCall)
            .where(DBCall.id == call_id)
            .where(DBCall.status == CallStatus.PARKED)
            .values(status=CallStatus.ABANDONED, ended_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        events.emit(db, call_id, RingEventType.UNPARKED, parked_call_id=snapshot["id"])
        events.emit(db, call_id, RingEventType.ENDED)
        db.commit()

        metrics.parked_abandoned.labels(reason=reason).inc()
        logger.info("parked_call_abandoned", call_id=call_id, parked_call_id=snapshot["id"], reason=reason)
        return True

    @staticmethod
    def _settle_transfer(db: Session, provider: TelephonyProvider, call_id: int, provider_call_ref: str,
                         target_agent_id: str) -> bool:
        """
        A transfer whose status callback never arrived. A dead leg ends the
        call and frees the target; a live one goes back into the parking lot.
        """
        try:
            live = provider.is_leg_live(provider_call_ref)
        except ProviderUnavailable:
            return False

        if live:
            hold_ref = ParkCoordinator.fail_transfer(db, call_id)
            if hold_ref is None:
                return False
            try:
                provider.redirect(provider_call_ref, twiml_builder.build_park_twiml(hold_ref))
            except ProviderUnavailable:
                logger.warning("stuck_transfer_redirect_failed", call_id=call_id, hold_ref=hold_ref)
            return True

        now = utcnow()
        result = db.execute(
            update(DBCall)
            .where(DBCall.id == call_id)
            .where(DBCall.status == CallStatus.TRANSFERRING)
            .values(status=CallStatus.COMPLETED, ended_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            return False
        PresenceRegistry.release_call(db, target_agent_id, call_id)
        events.emit(db, call_id, RingEventType.ENDED, actor_agent_id=target_agent_id)
        db.commit()
        logger.info("call_completed", call_id=call_id, agent_id=target_agent_id, reason="transfer_leg_ended")
        return True

    @staticmethod
    def sweep(db: Session, provider: TelephonyProvider, now=None) -> SweepResponse:

        """
        Server-side cleanup that runs whether or not any client is connected.

        - ringing calls whose timeout task never ran are expired as missed
        - parked calls older than PARK_MAX_AGE_SECONDS are abandoned and their
          leg hung up
        - parked calls whose provider leg already ended are abandoned
        - transfers that outlived their ring without a status callback are
          ended (leg gone) or parked again (leg still up)
        """
        now = now or utcnow()

        ring_cutoff = now - timedelta(seconds=config.RING_TIMEOUT_SECONDS + config.RING_GRACE_SECONDS)
        stale_rings = [
            row.id
            for row in db.query(DBCall.id)
            .filter(DBCall.status == CallStatus.RINGING)
            .filter(DBCall.created_at < ring_cutoff)
        ]
        expired = sum(1 for call_id in stale_rings if RingBroadcaster.expire_ring(db, call_id))

        park_cutoff = now - timedelta(seconds=config.PARK_MAX_AGE_SECONDS)
        abandoned = 0
        for snapshot in [_snapshot(row) for row in ParkCoordinator.list_parked(db)]:
            if snapshot["parked_at"] is not None and snapshot["parked_at"] < park_cutoff:
                if ParkCoordinator._abandon(db, snapshot, reason="max_age"):
                    abandoned += 1
                    try:
                        provider.redirect(snapshot["provider_call_ref"], twiml_builder.build_say_hangup_twiml(
                            twiml_builder.get_caller_text("technical_error")
                        ))
                    except ProviderUnavailable:
                        logger.warning("parked_leg_hangup_failed", call_id=snapshot["call_id"])
                continue

            try:
                live = provider.is_leg_live(snapshot["provider_call_ref"])
            except ProviderUnavailable:
                # Can't tell; leave it for the next sweep or the max-age bound.
                continue
            if not live and ParkCoordinator._abandon(db, snapshot, reason="leg_ended"):
                abandoned += 1

        stuck_transfers = [
            (row.id, row.provider_call_ref, row.owner_agent_id)
            for row in db.query(DBCall.id, DBCall.provider_call_ref, DBCall.owner_agent_id)
            .filter(DBCall.status == CallStatus.TRANSFERRING)
            .filter(DBCall.updated_at < ring_cutoff)
        ]
        settled = sum(
            1
            for call_id, provider_call_ref, target_agent_id in stuck_transfers
            if ParkCoordinator._settle_transfer(db, provider, call_id, provider_call_ref, target_agent_id)
        )

        if expired or abandoned or settled:
            logger.info("sweep_completed", expired_rings=expired, abandoned_parked=abandoned, settled_transfers=settled)
        return SweepResponse(expired_rings=expired, abandoned_parked=abandoned, settled_transfers=settled)
