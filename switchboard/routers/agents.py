from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from switchboard import events
from switchboard.database import get_db
from switchboard.models import AgentPresence, AgentViewResponse, AvailabilityRequest, EventFeed, OkResponse, RegisterAgentRequest, RingEvent
from switchboard.presence import PresenceRegistry
from switchboard.reconciliation import fold
from switchboard.security import verify_api_key

router = APIRouter(prefix="/agents", tags=["Agents"], dependencies=[Depends(verify_api_key)])


# GET /agents
# Gets: nothing
# Returns: JSON array of AgentPresence objects
# Example:
#   curl http://localhost:8000/agents
@router.get("", response_model=list[AgentPresence])
def list_agents(db: Session = Depends(get_db)):
    """List all known agents."""
    return PresenceRegistry.list_agents(db)


# GET /agents/eligible
# Gets: nothing
# Returns: JSON array of agent ids that are available and not on a call
# Example:
#   curl http://localhost:8000/agents/eligible
@router.get("/eligible", response_model=list[str])
def eligible_agents(db: Session = Depends(get_db)):
    """Agents a new call would ring right now."""
    return PresenceRegistry.eligible_agents(db)


# PUT /agents/{agent_id}
# Gets: JSON body {"display_name": "..."} (optional)
# Returns: AgentPresence; new agents start offline
# Example:
#   curl -X PUT http://localhost:8000/agents/alice -H 'Content-Type: application/json' -d '{"display_name":"Alice"}'
@router.put("/{agent_id}", response_model=AgentPresence)
def register_agent(agent_id: str, request: RegisterAgentRequest, db: Session = Depends(get_db)):
    """Register an agent (or rename one)."""
    return PresenceRegistry.register_agent(db, agent_id, request.display_name)


# GET /agents/{agent_id}
# Gets: path param agent_id
# Returns: AgentPresence; 404 if unknown
# Example:
#   curl http://localhost:8000/agents/alice
@router.get("/{agent_id}", response_model=AgentPresence)
def get_agent(agent_id: str, db: Session = Depends(get_db)):
    """Get an agent's presence."""
    return PresenceRegistry.get_presence(db, agent_id)


# POST /agents/{agent_id}/availability
# Gets: JSON body {"available": true|false}
# Returns: {ok}
# Example:
#   curl -X POST http://localhost:8000/agents/alice/availability -H 'Content-Type: application/json' -d '{"available":true}'
@router.post("/{agent_id}/availability", response_model=OkResponse)
def set_availability(agent_id: str, request: AvailabilityRequest, db: Session = Depends(get_db)):
    """Go available or offline. Does not affect a call in progress."""
    return OkResponse(ok=PresenceRegistry.set_available(db, agent_id, request.available))


# GET /agents/{agent_id}/events?after=0
# Gets: path param agent_id, query param after (event id cursor)
# Returns: EventFeed {agent_id, cursor, events}
# Example:
#   curl 'http://localhost:8000/agents/alice/events?after=42'
@router.get("/{agent_id}/events", response_model=EventFeed)
def agent_events(agent_id: str, after: int = 0, limit: int = 500, db: Session = Depends(get_db)):
    """Ordered change feed for one agent, resumable from a cursor."""
    PresenceRegistry.get_presence(db, agent_id)
    rows = events.events_for_agent(db, agent_id, after=after, limit=limit)
    cursor = rows[-1].id if rows else after
    return EventFeed(agent_id=agent_id, cursor=cursor, events=[RingEvent.model_validate(row) for row in rows])


# GET /agents/{agent_id}/view
# Gets: path param agent_id
# Returns: AgentViewResponse (incoming, active_call_id, parked) folded from the full event log
# Example:
#   curl http://localhost:8000/agents/alice/view
@router.get("/{agent_id}/view", response_model=AgentViewResponse)
def agent_view(agent_id: str, db: Session = Depends(get_db)):
    """What this agent's screen should show, computed server-side."""
    PresenceRegistry.get_presence(db, agent_id)
    view = None
    after = 0
    while True:
        rows = events.events_for_agent(db, agent_id, after=after)
        if not rows:
            break
        view = fold(rows, agent_id, view)
        after = view.cursor
    return (view or fold([], agent_id)).to_response()
