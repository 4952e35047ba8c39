"""API data models for Switchboard."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from switchboard.db_models import Availability, CallDirection, CallStatus, RingEventType


class Call(BaseModel):
    """Call as exposed to clients."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider_call_ref: str
    direction: CallDirection
    status: CallStatus
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    owner_agent_id: Optional[str] = None
    created_at: Optional[datetime] = None
    answered_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class AgentPresence(BaseModel):
    """Agent availability and current call."""
    model_config = ConfigDict(from_attributes=True)

    agent_id: str
    display_name: Optional[str] = None
    availability: Availability
    current_call_id: Optional[int] = None


class ParkedCall(BaseModel):
    """A call waiting in the parking lot."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    call_id: int
    parked_by_agent_id: str
    hold_ref: str
    caller_number: Optional[str] = None
    parked_at: Optional[datetime] = None


class RingEvent(BaseModel):
    """One entry of the ordered change feed."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    call_id: int
    agent_id: Optional[str] = None  # None = addressed to every agent
    event_type: RingEventType
    actor_agent_id: Optional[str] = None
    parked_call_id: Optional[int] = None
    caller_number: Optional[str] = None
    created_at: Optional[datetime] = None


class AgentRequest(BaseModel):
    """Request body naming the acting agent (claim, decline, park, end)."""
    agent_id: str


class RegisterAgentRequest(BaseModel):
    display_name: Optional[str] = None


class AvailabilityRequest(BaseModel):
    available: bool


class UnparkRequest(BaseModel):
    target_agent_id: str


class TransferRequest(BaseModel):
    agent_id: str
    target_agent_id: str


class ClaimResponse(BaseModel):
    won: bool
    call_id: int
    owner_agent_id: Optional[str] = None


class ParkResponse(BaseModel):
    parked_call_id: int
    call_id: int
    hold_ref: str


class UnparkResponse(BaseModel):
    ok: bool
    call_id: int
    target_agent_id: str


class OkResponse(BaseModel):
    ok: bool


class EventFeed(BaseModel):
    """Events past a cursor; ``cursor`` is the id to resume from next time."""
    agent_id: str
    cursor: int
    events: list[RingEvent]


class IncomingCallView(BaseModel):
    call_id: int
    caller_number: Optional[str] = None
    transfer: bool = False


class ParkedCallView(BaseModel):
    """A parking-lot entry as rebuilt from the event log."""
    parked_call_id: int
    call_id: int
    parked_by_agent_id: Optional[str] = None
    caller_number: Optional[str] = None
    parked_at: Optional[datetime] = None


class AgentViewResponse(BaseModel):
    """Server-side fold of the event log for one agent."""
    agent_id: str
    cursor: int
    incoming: list[IncomingCallView]
    active_call_id: Optional[int] = None
    parked: list[ParkedCallView]


class SweepResponse(BaseModel):
    expired_rings: int
    abandoned_parked: int
    settled_transfers: int = 0
