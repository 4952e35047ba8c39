from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.orm import Session

from switchboard.database import get_db
from switchboard.models import SweepResponse
from switchboard.parking import ParkCoordinator
from switchboard.security import verify_api_key
from switchboard.telephony import TelephonyProvider, get_provider

router = APIRouter(tags=["Core"])


# GET /
# Gets: nothing
# Returns: basic API metadata and a map of key endpoints
# Example:
#   curl http://localhost:8000/
@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Switchboard API - multi-agent call coordination",
        "version": "1.0.0",
        "description": "Rings every available agent, lets exactly one answer, and parks calls for any agent to pick up",
        "endpoints": {
            "claim": "/calls/{call_id}/claim",
            "decline": "/calls/{call_id}/decline",
            "park": "/calls/{call_id}/park",
            "unpark": "/parked/{parked_call_id}/unpark",
            "parked": "/parked",
            "agent_events": "/agents/{agent_id}/events",
            "agent_view": "/agents/{agent_id}/view",
            "twilio_voice": "/twilio/voice",
            "twilio_call_status": "/twilio/call-status",
        },
        "features": [
            "Simultaneous ring to all eligible agents",
            "Single-winner call claims",
            "Call parking and retrieval",
            "Ordered per-agent event feed",
            "Twilio voice integration",
        ],
    }


# GET /metrics
# Gets: nothing
# Returns: Prometheus text exposition
# Example:
#   curl http://localhost:8000/metrics
@router.get("/metrics")
async def metrics_endpoint():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# POST /admin/sweep
# Gets: optional X-API-Key header
# Returns: {expired_rings, abandoned_parked, settled_transfers}
# Example:
#   curl -X POST -H 'X-API-Key: <key>' http://localhost:8000/admin/sweep
@router.post("/admin/sweep", response_model=SweepResponse)
def run_sweep(
    db: Session = Depends(get_db),
    provider: TelephonyProvider = Depends(get_provider),
    api_key: str = Depends(verify_api_key),
):
    """Run the stale-call sweep now instead of waiting for Celery beat."""
    return ParkCoordinator.sweep(db, provider)
