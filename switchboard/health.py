"""
Health check and monitoring endpoints for production.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from switchboard.config import config
from switchboard.database import get_db
from switchboard.logging_config import logger

router = APIRouter(tags=["Health & Monitoring"])


# GET /health
# Gets: nothing
# Returns: {status, service, version}
# Example:
#   curl http://localhost:8000/health
@router.get("/health")
async def health_check():
    """
    Basic health check - returns 200 if service is running.
    Use this for basic liveness probes.
    """
    return {
        "status": "healthy",
        "service": "switchboard",
        "version": "1.0.0"
    }


# GET /health/ready
# Gets: nothing
# Returns: dependency readiness checks; 503 when the datastore is unreachable
# Example:
#   curl http://localhost:8000/health/ready
@router.get("/health/ready")
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check - verifies all dependencies are available.
    Use this for Kubernetes readiness probes.

    Checks:
    - Datastore reachable (required: every claim and unpark is decided there)
    - Twilio REST credentials (optional: without them park/unpark fail with 502)
    """
    checks = {
        "database": False,
        "twilio": "configured" if config.has_twilio_auth() else "not_configured",
        "ready": False
    }

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = True
        logger.debug("readiness_check_database", status="ok")
    except SQLAlchemyError as e:
        logger.warning("readiness_check_database", status="error", error=str(e))

    checks["ready"] = checks["database"] is True

    status_code = 200 if checks["ready"] else 503
    return JSONResponse(status_code=status_code, content=checks)


# GET /health/info
# Gets: nothing
# Returns: service configuration summary
# Example:
#   curl http://localhost:8000/health/info
@router.get("/health/info")
async def system_info():
    """
    System information and configuration status.
    """
    return {
        "service": "switchboard",
        "version": "1.0.0",
        "configuration": {
            "database": "sqlite" if config.DATABASE_URL.startswith("sqlite") else "postgresql",
            "twilio_configured": config.has_twilio_config(),
            "debug_mode": config.DEBUG,
            "ring_timeout_seconds": config.RING_TIMEOUT_SECONDS,
            "park_max_age_seconds": config.PARK_MAX_AGE_SECONDS,
            "sweep_interval_seconds": config.SWEEP_INTERVAL_SECONDS,
        },
        "features": {
            "ringing": True,
            "parking": config.has_twilio_auth(),
            "api_key_auth": bool(config.API_KEY),
        }
    }
