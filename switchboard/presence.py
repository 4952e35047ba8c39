"""
Presence registry: agent availability and the exclusive current call.

Availability belongs to the agent; ``current_call_id`` belongs to the
coordination core and only changes through the conditional updates below.
"""

from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from switchboard.db_models import Availability, DBAgentPresence, utcnow
from switchboard.errors import NotFound
from switchboard.logging_config import get_logger

logger = get_logger(__name__)


class PresenceRegistry:
    """Service for agent presence."""

    @staticmethod
    def register_agent(db: Session, agent_id: str, display_name: Optional[str] = None) -> DBAgentPresence:
        """Create the agent if unknown (offline), otherwise update its display name."""
        agent = db.get(DBAgentPresence, agent_id)
        if agent is None:
            agent = DBAgentPresence(
                agent_id=agent_id,
                display_name=display_name,
                availability=Availability.OFFLINE,
            )
            db.add(agent)
            logger.info("agent_registered", agent_id=agent_id)
        elif display_name is not None:
            agent.display_name = display_name
        db.commit()
        db.refresh(agent)
        return agent

    @staticmethod
    def get_presence(db: Session, agent_id: str) -> DBAgentPresence:
        agent = db.get(DBAgentPresence, agent_id)
        if agent is None:
            raise NotFound("Agent", agent_id)
        return agent

    @staticmethod
    def list_agents(db: Session) -> List[DBAgentPresence]:
        return db.query(DBAgentPresence).order_by(DBAgentPresence.agent_id).all()

    @staticmethod
    def set_available(db: Session, agent_id: str, available: bool) -> bool:
        """
        Toggle availability. Never touches current_call_id.

        An agent may go offline right after being picked for a ring; that
        ring still reaches them, since eligibility is a snapshot.
        """
        availability = Availability.AVAILABLE if available else Availability.OFFLINE
        result = db.execute(
            update(DBAgentPresence)
            .where(DBAgentPresence.agent_id == agent_id)
            .values(availability=availability, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            raise NotFound("Agent", agent_id)
        db.commit()
        logger.info("agent_availability_changed", agent_id=agent_id, availability=availability.value)
        return True

    @staticmethod
    def eligible_agents(db: Session) -> List[str]:
        """
        Agents that are available and not on a call, right now.

        If the store can't be read, nobody is eligible: treating agents as
        busy sends the caller to voicemail instead of risking a double booking.
        """
        try:
            rows = (
                db.query(DBAgentPresence.agent_id)
                .filter(DBAgentPresence.availability == Availability.AVAILABLE)
                .filter(DBAgentPresence.current_call_id.is_(None))
                .order_by(DBAgentPresence.agent_id)
                .all()
            )
        except OperationalError as e:
            db.rollback()
            logger.error("eligible_agents_unreadable", error=str(e))
            return []
        return [row.agent_id for row in rows]

    @staticmethod
    def is_eligible(db: Session, agent_id: str) -> bool:
        agent = db.get(DBAgentPresence, agent_id)
        return (
            agent is not None
            and agent.availability == Availability.AVAILABLE
            and agent.current_call_id is None
        )

    @staticmethod
    def bind_call(db: Session, agent_id: str, call_id: int, require_available: bool = False) -> bool:
        """
        Make ``call_id`` the agent's current call if they have none.

        Joins the caller's transaction (no commit). Returns False when the
        agent is unknown, already busy, or (with ``require_available``) offline.
        """
        stmt = (
            update(DBAgentPresence)
            .where(DBAgentPresence.agent_id == agent_id)
            .where(DBAgentPresence.current_call_id.is_(None))
        )
        if require_available:
            stmt = stmt.where(DBAgentPresence.availability == Availability.AVAILABLE)
        result = db.execute(
            stmt.values(current_call_id=call_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def release_call(db: Session, agent_id: Optional[str], call_id: int) -> bool:
        """Clear the agent's current call, but only if it is still ``call_id``. No commit."""
        if not agent_id:
            return False
        result = db.execute(
            update(DBAgentPresence)
            .where(DBAgentPresence.agent_id == agent_id)
            .where(DBAgentPresence.current_call_id == call_id)
            .values(current_call_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
