"""
Security utilities for production.
- API key authentication for agent and admin endpoints
- Twilio request signature validation for webhooks
"""

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from twilio.request_validator import RequestValidator

from switchboard.config import config
from switchboard.logging_config import get_logger

logger = get_logger(__name__)

# API Key authentication scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)) -> str:
    """
    Verify API key for protected endpoints.

    Usage:
        @router.post("/calls/{call_id}/claim")
        async def claim(call_id: int, api_key: str = Depends(verify_api_key)):
            ...
    """
    if not config.API_KEY:
        # If no API key is configured, allow access (development mode)
        return "development"

    if api_key != config.API_KEY:
        logger.warning("api_key_authentication_failed", provided_key=api_key[:8] if api_key else None)
        raise HTTPException(
            status_code=403,
            detail="Invalid or missing API key"
        )

    return api_key


async def verify_twilio_signature(request: Request) -> None:
    """
    Reject webhook calls not signed by Twilio.

    Skipped when no auth token is configured (local development) so the
    webhooks can be exercised with curl.
    """
    if not config.TWILIO_AUTH_TOKEN:
        return

    form = await request.form()
    signature = request.headers.get("X-Twilio-Signature", "")
    url = f"{config.BASE_URL}{request.url.path}"
    if request.url.query:
        url += f"?{request.url.query}"

    validator = RequestValidator(config.TWILIO_AUTH_TOKEN)
    if not validator.validate(url, dict(form), signature):
        logger.warning("twilio_signature_invalid", path=request.url.path)
        raise HTTPException(status_code=403, detail="Invalid Twilio signature")
