"""
SQLAlchemy database models.

The two correctness-critical constraints live here rather than in code:
``call_claims.call_id`` is UNIQUE (one owner per call), and a parked call is a
row whose deletion is the retrieval itself.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Index, Enum as SQLEnum
from datetime import datetime, timezone
import enum

from switchboard.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (the store compares timestamps without tz info)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CallDirection(str, enum.Enum):
    """Call direction enum."""
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CallStatus(str, enum.Enum):
    """Call status enum."""
    RINGING = "ringing"
    ACTIVE = "active"
    PARKED = "parked"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    MISSED = "missed"
    ABANDONED = "abandoned"


TERMINAL_STATUSES = (CallStatus.COMPLETED, CallStatus.MISSED, CallStatus.ABANDONED)

# Statuses in which the call's owner must hold it as current_call_id.
OWNED_STATUSES = (CallStatus.ACTIVE, CallStatus.TRANSFERRING)


class Availability(str, enum.Enum):
    """Agent availability enum."""
    OFFLINE = "offline"
    AVAILABLE = "available"


class RingEventType(str, enum.Enum):
    """Ring/change event types folded by every client."""
    RING_START = "ring_start"
    RING_CANCEL = "ring_cancel"
    ANSWERED = "answered"
    DECLINED = "declined"
    TRANSFER_START = "transfer_start"
    PARKED = "parked"
    UNPARKED = "unparked"
    ENDED = "ended"


class DBCall(Base):
    """
    Call model - one row per provider call leg we coordinate.
    """
    __tablename__ = "calls"

    id = Column(Integer, primary_key=True, index=True)
    provider_call_ref = Column(String(100), unique=True, nullable=False, index=True)  # Twilio Call SID
    direction = Column(SQLEnum(CallDirection), nullable=False, default=CallDirection.INBOUND)
    status = Column(SQLEnum(CallStatus), nullable=False, default=CallStatus.RINGING, index=True)

    from_number = Column(String(50))
    to_number = Column(String(50))
    owner_agent_id = Column(String(100), ForeignKey("agent_presence.agent_id"), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    answered_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class DBAgentPresence(Base):
    """
    Agent presence - availability plus the exclusive current call.
    """
    __tablename__ = "agent_presence"

    agent_id = Column(String(100), primary_key=True)  # Twilio client identity
    display_name = Column(String(255))
    availability = Column(SQLEnum(Availability), nullable=False, default=Availability.OFFLINE)
    current_call_id = Column(
        Integer,
        ForeignKey("calls.id", use_alter=True, name="fk_agent_presence_current_call"),
        nullable=True,
    )

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class DBRingAssignment(Base):
    """Agents considered eligible when a call started ringing."""
    __tablename__ = "ring_assignments"
    __table_args__ = (UniqueConstraint("call_id", "agent_id", name="uq_ring_assignment"),)

    id = Column(Integer, primary_key=True, index=True)
    call_id = Column(Integer, ForeignKey("calls.id"), nullable=False, index=True)
    agent_id = Column(String(100), ForeignKey("agent_presence.agent_id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class DBClaimRecord(Base):
    """The claim ledger. At most one row per call, ever."""
    __tablename__ = "call_claims"

    id = Column(Integer, primary_key=True, index=True)
    call_id = Column(Integer, ForeignKey("calls.id"), unique=True, nullable=False)
    agent_id = Column(String(100), ForeignKey("agent_presence.agent_id"), nullable=False)
    claimed_at = Column(DateTime, default=utcnow)


class DBParkedCall(Base):
    """
    A call suspended in a provider-side hold conference.
    Deleted exactly once, by whichever retrieval or cleanup wins.
    """
    __tablename__ = "parked_calls"

    id = Column(Integer, primary_key=True, index=True)
    call_id = Column(Integer, ForeignKey("calls.id"), nullable=False, index=True)
    parked_by_agent_id = Column(String(100), ForeignKey("agent_presence.agent_id"), nullable=False)
    hold_ref = Column(String(255), nullable=False)  # conference name
    provider_call_ref = Column(String(100), nullable=False, index=True)
    caller_number = Column(String(50))
    parked_at = Column(DateTime, default=utcnow, index=True)


class DBRingEvent(Base):
    """
    Append-only event log. ``id`` is the cursor clients resume from.
    ``agent_id`` NULL means the event is addressed to every agent.
    """
    __tablename__ = "ring_events"
    __table_args__ = (Index("ix_ring_events_agent_cursor", "agent_id", "id"),)

    id = Column(Integer, primary_key=True, index=True)
    call_id = Column(Integer, ForeignKey("calls.id"), nullable=False, index=True)
    agent_id = Column(String(100), nullable=True)
    event_type = Column(SQLEnum(RingEventType), nullable=False)
    actor_agent_id = Column(String(100), nullable=True)
    parked_call_id = Column(Integer, nullable=True)
    caller_number = Column(String(50))
    created_at = Column(DateTime, default=utcnow)
