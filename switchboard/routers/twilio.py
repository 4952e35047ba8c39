from fastapi import APIRouter, Depends, Form
from fastapi.responses import Response
from sqlalchemy.orm import Session

from switchboard import metrics
from switchboard.config import config
from switchboard.database import get_db
from switchboard.db_models import CallStatus, OWNED_STATUSES
from switchboard.errors import AgentNotEligible, NotFound, SwitchboardError
from switchboard.logging_config import logger
from switchboard.parking import ParkCoordinator
from switchboard.ringing import RingBroadcaster
from switchboard.security import verify_twilio_signature
from switchboard.services import CallService
from switchboard.telephony import ENDED_STATUSES, TelephonyProvider, get_provider
from switchboard.twiml_builder import (
    build_empty_twiml,
    build_hangup_twiml,
    build_hold_music_twiml,
    build_outbound_twiml,
    build_park_twiml,
    build_say_hangup_twiml,
    build_voicemail_twiml,
    get_caller_text,
)

router = APIRouter(prefix="/twilio", tags=["Twilio"], dependencies=[Depends(verify_twilio_signature)])


def _twiml(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


# POST /twilio/voice
# Gets: Twilio form fields (CallSid, From, To, ...)
# Returns: TwiML (application/xml) ringing every eligible agent, or voicemail if nobody is eligible
# Example:
#   curl -X POST http://localhost:8000/twilio/voice -d 'CallSid=CAxxx&From=%2B1555&To=%2B1666'
@router.post("/voice")
def twilio_voice(
    call_sid: str = Form("", alias="CallSid"),
    from_number: str = Form("", alias="From"),
    to_number: str = Form("", alias="To"),
    db: Session = Depends(get_db),
    provider: TelephonyProvider = Depends(get_provider),
):
    """Twilio webhook for inbound calls."""

    logger.info("voice_webhook_called", call_sid=call_sid, from_number=from_number, to_number=to_number)

    try:
        call, created = CallService.create_inbound(db, call_sid, from_number=from_number, to_number=to_number)
        if created:
            agents = RingBroadcaster.start_ring(db, call)
        elif call.status == CallStatus.RINGING:
            # Webhook retried by Twilio: ring the same snapshot again.
            agents = RingBroadcaster.assigned_agents(db, call.id)
        else:
            agents = []

        if not agents:
            logger.info("no_agents_available", call_id=call.id)
            return _twiml(build_voicemail_twiml(get_caller_text("no_agents")))

        return _twiml(provider.alert(call_sid, agents, config.RING_TIMEOUT_SECONDS))

    except SwitchboardError as e:
        logger.error("voice_webhook_error", call_sid=call_sid, error=e.code, detail=e.message)
        return _twiml(build_say_hangup_twiml(get_caller_text("technical_error")))


# POST /twilio/outbound
# Gets: Twilio form fields from the agent's browser client (CallSid, From=client:<agent_id>, To=<number>)
# Returns: TwiML dialling the number, or a spoken error if the agent can't take a call
# Example:
#   curl -X POST http://localhost:8000/twilio/outbound -d 'CallSid=CAyyy&From=client%3Aalice&To=%2B1777'
@router.post("/outbound")
def twilio_outbound(
    call_sid: str = Form("", alias="CallSid"),
    from_number: str = Form("", alias="From"),
    to_number: str = Form("", alias="To"),
    db: Session = Depends(get_db),
):
    """Twilio webhook for agent-originated calls."""

    agent_id = from_number.split(":", 1)[1] if from_number.startswith("client:") else from_number
    logger.info("outbound_webhook_called", call_sid=call_sid, agent_id=agent_id, to_number=to_number)

    try:
        CallService.create_outbound(db, agent_id, to_number, call_sid)
    except (AgentNotEligible, NotFound) as e:
        logger.info("outbound_refused", call_sid=call_sid, agent_id=agent_id, error=e.code)
        return _twiml(build_say_hangup_twiml(get_caller_text("connect_failed")))
    except SwitchboardError as e:
        logger.error("outbound_webhook_error", call_sid=call_sid, error=e.code, detail=e.message)
        return _twiml(build_say_hangup_twiml(get_caller_text("technical_error")))

    return _twiml(build_outbound_twiml(to_number, config.TWILIO_CALLER_ID))


# POST /twilio/dial-status
# Gets: Twilio <Dial> action fields (CallSid, DialCallStatus, ...)
# Returns: TwiML: voicemail if nobody answered, hangup once a bridged call is over
# Example:
#   curl -X POST http://localhost:8000/twilio/dial-status -d 'CallSid=CAxxx&DialCallStatus=no-answer'
@router.post("/dial-status")
def twilio_dial_status(
    call_sid: str = Form("", alias="CallSid"),
    dial_call_status: str = Form("", alias="DialCallStatus"),
    db: Session = Depends(get_db),
):
    """The ring (or outbound dial) finished."""

    logger.info("dial_status", call_sid=call_sid, dial_call_status=dial_call_status)

    call = CallService.get_call_by_ref(db, call_sid)
    if call is None:
        metrics.provider_callbacks_ignored.labels(callback="dial_status").inc()
        return _twiml(build_hangup_twiml())

    if call.status in (CallStatus.PARKED, CallStatus.TRANSFERRING):
        # Leg was redirected away from the ring; the parking flow owns it now.
        return _twiml(build_empty_twiml())

    if call.status == CallStatus.RINGING and dial_call_status in ("no-answer", "busy", "failed"):
        RingBroadcaster.expire_ring(db, call.id)
        return _twiml(build_voicemail_twiml(get_caller_text("ring_unanswered")))

    CallService.handle_provider_termination(db, call_sid, dial_call_status or "completed")
    return _twiml(build_hangup_twiml())


# POST /twilio/call-status
# Gets: Twilio status callback fields (CallSid, CallStatus, ...)
# Returns: {"status": "received"}
# Example:
#   curl -X POST http://localhost:8000/twilio/call-status -d 'CallSid=CAxxx&CallStatus=completed'
@router.post("/call-status")
def twilio_call_status(
    call_sid: str = Form("", alias="CallSid"),
    call_status: str = Form("", alias="CallStatus"),
    db: Session = Depends(get_db),
):
    """Receive call status updates from Twilio. End-of-call always wins."""

    logger.info("call_status", call_sid=call_sid, call_status=call_status)

    if call_status in ENDED_STATUSES:
        CallService.handle_provider_termination(db, call_sid, call_status)

    return {"status": "received"}


# POST /twilio/hold-music
# Gets: Twilio conference waitUrl request
# Returns: TwiML looping the hold music
# Example:
#   curl -X POST http://localhost:8000/twilio/hold-music
@router.post("/hold-music")
def twilio_hold_music():
    """Music for callers waiting in the parking lot."""
    return _twiml(build_hold_music_twiml())


# POST /twilio/parked-call-status
# Gets: Twilio <Dial><Conference> action fields (CallSid, ...)
# Returns: TwiML hangup
# Example:
#   curl -X POST http://localhost:8000/twilio/parked-call-status -d 'CallSid=CAxxx'
@router.post("/parked-call-status")
def twilio_parked_call_status(call_sid: str = Form("", alias="CallSid"), db: Session = Depends(get_db)):
    """The caller left the hold conference (hung up while parked)."""

    logger.info("parked_call_status", call_sid=call_sid)
    ParkCoordinator.handle_parked_leg_ended(db, call_sid)
    return _twiml(build_hangup_twiml())


# POST /twilio/transfer-status?call_id=1
# Gets: query param call_id, Twilio <Dial> action fields (CallSid, DialCallStatus, ...)
# Returns: TwiML: back to the hold conference if the target never answered, otherwise hangup
# Example:
#   curl -X POST 'http://localhost:8000/twilio/transfer-status?call_id=1' -d 'CallSid=CAxxx&DialCallStatus=no-answer'
@router.post("/transfer-status")
def twilio_transfer_status(
    call_id: int,
    call_sid: str = Form("", alias="CallSid"),
    dial_call_status: str = Form("", alias="DialCallStatus"),
    db: Session = Depends(get_db),
):
    """A retrieved call's ring to its target agent finished."""

    logger.info("transfer_status", call_id=call_id, call_sid=call_sid, dial_call_status=dial_call_status)

    if dial_call_status != "completed":
        hold_ref = ParkCoordinator.fail_transfer(db, call_id)
        if hold_ref is not None:
            return _twiml(build_park_twiml(hold_ref))

    try:
        call = CallService.get_call(db, call_id)
    except NotFound:
        metrics.provider_callbacks_ignored.labels(callback="transfer_status").inc()
        return _twiml(build_hangup_twiml())

    # The bridged conversation with the target is over.
    if call.status in OWNED_STATUSES:
        CallService.handle_provider_termination(db, call.provider_call_ref, dial_call_status or "completed")
    return _twiml(build_hangup_twiml())
