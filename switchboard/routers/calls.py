from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from switchboard.claims import ClaimLedger
from switchboard.database import get_db
from switchboard.db_models import CallStatus
from switchboard.errors import ClaimConflict
from switchboard.models import (
    AgentRequest,
    Call,
    ClaimResponse,
    OkResponse,
    ParkedCall,
    ParkResponse,
    TransferRequest,
    UnparkRequest,
    UnparkResponse,
)
from switchboard.parking import ParkCoordinator
from switchboard.ringing import RingBroadcaster
from switchboard.security import verify_api_key
from switchboard.services import CallService
from switchboard.telephony import TelephonyProvider, get_provider

router = APIRouter(tags=["Calls"], dependencies=[Depends(verify_api_key)])


# GET /calls?status=ringing&limit=50
# Gets: optional query params status, skip, limit
# Returns: JSON array of Call objects, newest first
# Example:
#   curl http://localhost:8000/calls?status=active
@router.get("/calls", response_model=list[Call])
def list_calls(status: Optional[CallStatus] = None, skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    """List calls."""
    return CallService.list_calls(db, status=status, skip=skip, limit=limit)


# GET /calls/{call_id}
# Gets: path param call_id (int)
# Returns: Call object; 404 if unknown
# Example:
#   curl http://localhost:8000/calls/1
@router.get("/calls/{call_id}", response_model=Call)
def get_call(call_id: int, db: Session = Depends(get_db)):
    """Get one call."""
    return CallService.get_call(db, call_id)


# POST /calls/{call_id}/claim
# Gets: JSON body {"agent_id": "..."}
# Returns: {won, call_id, owner_agent_id}; 409 claim_conflict if another agent owns the call
# Example:
#   curl -X POST http://localhost:8000/calls/1/claim -H 'Content-Type: application/json' -d '{"agent_id":"alice"}'
@router.post("/calls/{call_id}/claim", response_model=ClaimResponse)
def claim_call(call_id: int, request: AgentRequest, db: Session = Depends(get_db)):
    """
    Answer a ringing call. Exactly one concurrent claimant wins.

    Losers get 409 with the winner in ``owner_agent_id`` and must tear down
    any leg they connected while waiting.
    """
    result = ClaimLedger.claim(db, call_id, request.agent_id)
    if not result.won:
        raise ClaimConflict(call_id, result.owner_agent_id)
    return result


# POST /calls/{call_id}/decline
# Gets: JSON body {"agent_id": "..."}
# Returns: {ok}; ok=false if the call already stopped ringing or was declined before
# Example:
#   curl -X POST http://localhost:8000/calls/1/decline -H 'Content-Type: application/json' -d '{"agent_id":"bob"}'
@router.post("/calls/{call_id}/decline", response_model=OkResponse)
def decline_call(call_id: int, request: AgentRequest, db: Session = Depends(get_db)):
    """Stop ringing for this agent only."""
    return OkResponse(ok=RingBroadcaster.decline(db, call_id, request.agent_id))


# POST /calls/{call_id}/park
# Gets: JSON body {"agent_id": "..."} (must be the owner)
# Returns: {parked_call_id, call_id, hold_ref}; 502 if the provider could not move the caller
# Example:
#   curl -X POST http://localhost:8000/calls/1/park -H 'Content-Type: application/json' -d '{"agent_id":"alice"}'
@router.post("/calls/{call_id}/park", response_model=ParkResponse)
def park_call(
    call_id: int,
    request: AgentRequest,
    db: Session = Depends(get_db),
    provider: TelephonyProvider = Depends(get_provider),
):
    """Put the caller on hold in the parking lot and free the agent."""
    return ParkCoordinator.park(db, provider, call_id, request.agent_id)


# POST /calls/{call_id}/transfer
# Gets: JSON body {"agent_id": "...", "target_agent_id": "..."} (agent_id must be the owner)
# Returns: {ok, call_id, target_agent_id}; 409 agent_not_eligible if the target is offline or busy
# Example:
#   curl -X POST http://localhost:8000/calls/1/transfer -H 'Content-Type: application/json' -d '{"agent_id":"alice","target_agent_id":"bob"}'
@router.post("/calls/{call_id}/transfer", response_model=UnparkResponse)
def transfer_call(
    call_id: int,
    request: TransferRequest,
    db: Session = Depends(get_db),
    provider: TelephonyProvider = Depends(get_provider),
):
    """Send an answered call to another agent via the parking lot."""
    return ParkCoordinator.transfer(db, provider, call_id, request.agent_id, request.target_agent_id)


# POST /calls/{call_id}/transfer/complete

# Gets: JSON body {"agent_id": "..."} (the unpark target)
# Returns: {ok}; ok=false if the transfer was already completed
# Example:
#   curl -X POST http://localhost:8000/calls/1/transfer/complete -H 'Content-Type: application/json' -d '{"agent_id":"bob"}'
@router.post("/calls/{call_id}/transfer/complete", response_model=OkResponse)
def complete_transfer(call_id: int, request: AgentRequest, db: Session = Depends(get_db)):
    """Target agent picked up a retrieved call."""
    return OkResponse(ok=ParkCoordinator.complete_transfer(db, call_id, request.agent_id))


# POST /calls/{call_id}/end
# Gets: JSON body {"agent_id": "..."} (must be the owner)
# Returns: {ok}; ok=false if the call had already ended
# Example:
#   curl -X POST http://localhost:8000/calls/1/end -H 'Content-Type: application/json' -d '{"agent_id":"alice"}'
@router.post("/calls/{call_id}/end", response_model=OkResponse)
def end_call(call_id: int, request: AgentRequest, db: Session = Depends(get_db)):
    """Owner hangs up."""
    return OkResponse(ok=CallService.end_call(db, call_id, request.agent_id))


# GET /parked
# Gets: nothing
# Returns: JSON array of ParkedCall objects, oldest first
# Example:
#   curl http://localhost:8000/parked
@router.get("/parked", response_model=list[ParkedCall])
def list_parked(db: Session = Depends(get_db)):
    """List the parking lot."""
    return ParkCoordinator.list_parked(db)


# POST /parked/{parked_call_id}/unpark
# Gets: JSON body {"target_agent_id": "..."}
# Returns: {ok, call_id, target_agent_id}; 404 if someone else already retrieved it
# Example:
#   curl -X POST http://localhost:8000/parked/1/unpark -H 'Content-Type: application/json' -d '{"target_agent_id":"bob"}'
@router.post("/parked/{parked_call_id}/unpark", response_model=UnparkResponse)
def unpark_call(
    parked_call_id: int,
    request: UnparkRequest,
    db: Session = Depends(get_db),
    provider: TelephonyProvider = Depends(get_provider),
):
    """Retrieve a parked call for one agent. At most one retrieval succeeds."""
    return ParkCoordinator.unpark(db, provider, parked_call_id, request.target_agent_id)
