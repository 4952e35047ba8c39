"""TwiML generation utilities.

Handles:
- XML escaping for all dynamic content
- Proper URL encoding for action attributes
- Consistent voice settings for caller-facing prompts
- Unicode normalization and control character removal
"""

import re
import unicodedata
import xml.sax.saxutils as saxutils
from typing import Optional, Sequence
from urllib.parse import urlencode

from switchboard.config import config


CALLER_TEXT = {
    "no_agents": "We are sorry, but all of our agents are currently busy. Please leave a message after the beep.",
    "ring_unanswered": "All agents are currently unavailable. Please leave a message after the beep.",
    "message_thanks": "Thank you for your message. Goodbye.",
    "technical_error": "We are experiencing technical difficulties. Please try again later.",
    "connect_failed": "Unable to connect your call. Please try again.",
    "hold": "Please continue to hold.",
    "fallback_short": "One moment please.",
}


def get_caller_text(key: str) -> str:
    return CALLER_TEXT.get(key, CALLER_TEXT["fallback_short"])


def _say_attrs() -> str:
    voice = (config.VOICE_NAME or "").strip()
    if not voice:
        return ""
    return f' voice="{saxutils.escape(voice)}"'


def _url(path: str, **params) -> str:
    """Absolute webhook URL, XML-escaped for use inside an attribute."""
    url = f"{config.BASE_URL}{path}"
    if params:
        url += "?" + urlencode(params)
    return saxutils.escape(url, {'"': "&quot;"})


def _client_identity(agent_id: str) -> str:
    # Client identities are plain strings; strip anything that can't be an identity.
    return saxutils.escape(re.sub(r"[\s<>]", "", agent_id or ""))


def sanitize_say_text(text: str, fallback: Optional[str] = None) -> str:
    """
    Sanitize text for Twilio <Say> tags.

    - Normalizes Unicode (NFKC)
    - Removes control characters (keeps basic whitespace)
    - Collapses whitespace
    - Escapes for XML
    - Returns fallback if empty
    """
    if not text:
        text = fallback or get_caller_text("fallback_short")

    t = unicodedata.normalize("NFKC", text)
    t = "".join(ch for ch in t if ch in ["\n", "\t"] or ord(ch) >= 32)
    t = re.sub(r"\s+", " ", t).strip()

    if not t:
        t = fallback or get_caller_text("fallback_short")

    return saxutils.escape(t)


def build_ring_twiml(agent_ids: Sequence[str], timeout: int, caller_id: Optional[str] = None) -> str:
    """
    Ring every agent's browser client at once.

    Twilio bridges the first client that accepts; the dial action URL is hit
    once the <Dial> finishes (answered call ended, nobody answered, or the
    caller hung up while ringing).
    """
    caller_attr = f' callerId="{saxutils.escape(caller_id)}"' if caller_id else ""
    clients = "\n".join(f"        <Client>{_client_identity(agent_id)}</Client>" for agent_id in agent_ids)
    action_url = _url("/twilio/dial-status")

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Dial timeout="{int(timeout)}" action="{action_url}" method="POST"{caller_attr}>
{clients}
    </Dial>
</Response>"""


def build_voicemail_twiml(prompt: str) -> str:
    """Say a prompt, record a message, thank the caller and hang up."""
    say_attrs = _say_attrs()
    prompt_escaped = sanitize_say_text(prompt)
    thanks = sanitize_say_text(get_caller_text("message_thanks"))

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Say{say_attrs}>{prompt_escaped}</Say>
    <Record timeout="3" maxLength="120" />
    <Say{say_attrs}>{thanks}</Say>
    <Hangup/>
</Response>"""


def build_say_hangup_twiml(message: str) -> str:
    """Build TwiML that says a message and hangs up."""
    say_attrs = _say_attrs()
    msg_escaped = sanitize_say_text(message)

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Say{say_attrs}>{msg_escaped}</Say>
    <Hangup/>
</Response>"""


def build_hangup_twiml() -> str:
    return """<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Hangup/>
</Response>"""


def build_empty_twiml() -> str:
    """No further instructions (the bridged call simply continues or ends)."""
    return """<?xml version="1.0" encoding="UTF-8"?>
<Response/>"""


def build_park_twiml(hold_ref: str) -> str:
    """
    Put the caller alone in a hold conference with music.

    The dial action fires when the caller leaves the conference, which is
    how a hang-up while parked reaches us.
    """
    conference = saxutils.escape(hold_ref)
    wait_url = _url("/twilio/hold-music")
    action_url = _url("/twilio/parked-call-status")

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Dial action="{action_url}" method="POST">
        <Conference beep="false" waitUrl="{wait_url}" waitMethod="POST" startConferenceOnEnter="true" endConferenceOnExit="true">{conference}</Conference>
    </Dial>
</Response>"""


def build_hold_music_twiml() -> str:
    music = saxutils.escape(config.HOLD_MUSIC_URL)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Play loop="0">{music}</Play>
    <Redirect method="POST">{_url("/twilio/hold-music")}</Redirect>
</Response>"""


def build_transfer_twiml(agent_id: str, call_id: int, timeout: int) -> str:
    """Ring exactly one agent with a held call; the action URL reports the outcome."""
    action_url = _url("/twilio/transfer-status", call_id=call_id)

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Dial timeout="{int(timeout)}" action="{action_url}" method="POST">
        <Client>{_client_identity(agent_id)}</Client>
    </Dial>
</Response>"""


def build_outbound_twiml(to_number: str, caller_id: str) -> str:
    """Dial a PSTN number on behalf of an agent's browser client."""
    number = saxutils.escape(to_number)
    caller_attr = f' callerId="{saxutils.escape(caller_id)}"' if caller_id else ""
    action_url = _url("/twilio/dial-status")

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Dial action="{action_url}" method="POST"{caller_attr}>
        <Number>{number}</Number>
    </Dial>
</Response>"""
