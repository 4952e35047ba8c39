"""Telephony provider capability surface.

The coordination core needs three things from the provider:

- ``alert``: offer a call to several destinations at once (for Twilio this
  is the TwiML returned from the voice webhook, so it cannot fail remotely)
- ``redirect``: move a live leg somewhere else (hold conference, an agent,
  a hangup)
- ``fetch_status``: ask whether a leg is still alive

Status changes arrive asynchronously through the ``/twilio/*`` webhooks.
"""

from __future__ import annotations

import time
from typing import Optional, Sequence

import requests
from twilio.base.exceptions import TwilioException, TwilioRestException

from switchboard import twiml_builder
from switchboard.config import config
from switchboard.errors import ProviderUnavailable
from switchboard.logging_config import get_logger

logger = get_logger(__name__)

# Provider statuses after which a leg can never be redirected again.
ENDED_STATUSES = frozenset({"completed", "canceled", "busy", "failed", "no-answer"})


class TelephonyProvider:
    """Interface implemented by the Twilio provider (and test doubles)."""

    def alert(self, call_ref: str, destinations: Sequence[str], timeout: int) -> str:
        raise NotImplementedError

    def redirect(self, call_ref: str, twiml: str) -> None:
        raise NotImplementedError

    def fetch_status(self, call_ref: str) -> Optional[str]:
        raise NotImplementedError

    def is_leg_live(self, call_ref: str) -> bool:
        status = self.fetch_status(call_ref)
        return status is not None and status not in ENDED_STATUSES


class TwilioProvider(TelephonyProvider):
    """Twilio REST + TwiML implementation with bounded retries."""

    def __init__(self, max_retries: int = None, base_delay: float = None):
        self._client = None
        self._max_retries = config.PROVIDER_MAX_RETRIES if max_retries is None else max_retries
        self._base_delay = config.PROVIDER_RETRY_BASE_DELAY if base_delay is None else base_delay

    @property
    def client(self):
        if self._client is None:
            if not config.has_twilio_auth():
                raise ProviderUnavailable(
                    "connect",
                    "Twilio not configured. Set TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN in .env",
                )
            from twilio.rest import Client

            self._client = Client(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN)
        return self._client

    def alert(self, call_ref: str, destinations: Sequence[str], timeout: int) -> str:
        logger.info("provider_alert", call_ref=call_ref, destinations=list(destinations), timeout=timeout)
        return twiml_builder.build_ring_twiml(destinations, timeout)

    def redirect(self, call_ref: str, twiml: str) -> None:
        self._with_retry("redirect", call_ref, lambda: self.client.calls(call_ref).update(twiml=twiml))
        logger.info("provider_redirected", call_ref=call_ref)

    def fetch_status(self, call_ref: str) -> Optional[str]:
        try:
            call = self._with_retry("fetch", call_ref, lambda: self.client.calls(call_ref).fetch())
        except ProviderUnavailable as e:
            if e.reason == "not_found":
                return None
            raise
        return call.status

    def _with_retry(self, operation: str, call_ref: str, fn):
        attempt = 0
        while True:
            try:
                return fn()
            except TwilioRestException as e:
                if e.status == 404:
                    raise ProviderUnavailable(operation, "not_found") from e
                if e.status < 500 or attempt >= self._max_retries:
                    logger.error("provider_request_failed", operation=operation, call_ref=call_ref,
                                 status=e.status, code=e.code, error=e.msg)
                    raise ProviderUnavailable(operation, str(e.msg)) from e
            except (TwilioException, requests.RequestException) as e:
                if attempt >= self._max_retries:
                    logger.error("provider_request_failed", operation=operation, call_ref=call_ref, error=str(e))
                    raise ProviderUnavailable(operation, str(e)) from e
            attempt += 1
            delay = self._base_delay * (2 ** (attempt - 1))
            logger.warning("provider_retry", operation=operation, call_ref=call_ref, attempt=attempt, delay=delay)
            time.sleep(delay)


_provider: Optional[TelephonyProvider] = None


def get_provider() -> TelephonyProvider:
    """Process-wide provider (FastAPI dependency; overridden in tests)."""
    global _provider
    if _provider is None:
        _provider = TwilioProvider()
    return _provider
