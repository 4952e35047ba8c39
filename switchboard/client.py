"""
Agent-side client for the Switchboard API.

``SwitchboardClient`` is a thin httpx wrapper over the client-facing
endpoints. Error bodies are turned back into the same typed exceptions the
server raised (ClaimConflict, NotFound, ...), so agent code handles one
error taxonomy whether it runs in-process or over HTTP.

``ClientSession`` is what an agent UI holds: the folded event log, an
optimistic overlay for the agent's own actions, and the browser call legs
that were connected speculatively while a claim was in flight.

Usage:
    client = SwitchboardClient("https://switchboard.example.com", agent_id="alice")
    session = ClientSession(client, disconnect=lambda leg: leg.disconnect())
    session.sync()
    session.accept(call_id, leg)   # claim; tears the leg down if we lost
"""

from typing import Any, Callable, Dict, Optional, Set

import httpx

from switchboard.errors import ClaimConflict, NotFound, StaleState, SwitchboardError
from switchboard.logging_config import get_logger
from switchboard.models import (
    AgentPresence,
    ClaimResponse,
    EventFeed,
    ParkedCallView,
    ParkResponse,
    UnparkResponse,
)
from switchboard.reconciliation import AgentView, fold

logger = get_logger(__name__)


class SwitchboardClient:
    """HTTP client bound to one agent."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        agent_id: str = "",
        api_key: Optional[str] = None,
        http: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.agent_id = agent_id
        headers = {"X-API-Key": api_key} if api_key else {}
        # Any httpx.Client works here, including FastAPI's TestClient.
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout, headers=headers)
        if http is not None and api_key:
            self._http.headers.update(headers)

    def close(self) -> None:
        self._http.close()

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and "error" in body:
            raise SwitchboardError.from_dict(body)
        resp.raise_for_status()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        resp = self._http.request(method, path, **kwargs)
        self._raise_for_status(resp)
        return resp.json()

    # Presence

    def register(self, display_name: Optional[str] = None) -> AgentPresence:
        data = self._request("PUT", f"/agents/{self.agent_id}", json={"display_name": display_name})
        return AgentPresence.model_validate(data)

    def set_available(self, available: bool) -> bool:
        data = self._request("POST", f"/agents/{self.agent_id}/availability", json={"available": available})
        return data["ok"]

    def eligible_agents(self) -> list[str]:
        return self._request("GET", "/agents/eligible")

    # Calls

    def claim(self, call_id: int) -> ClaimResponse:
        """Raises ClaimConflict if another agent got there first."""
        data = self._request("POST", f"/calls/{call_id}/claim", json={"agent_id": self.agent_id})
        return ClaimResponse.model_validate(data)

    def decline(self, call_id: int) -> bool:
        return self._request("POST", f"/calls/{call_id}/decline", json={"agent_id": self.agent_id})["ok"]

    def park(self, call_id: int) -> ParkResponse:
        data = self._request("POST", f"/calls/{call_id}/park", json={"agent_id": self.agent_id})
        return ParkResponse.model_validate(data)

    def unpark(self, parked_call_id: int, target_agent_id: Optional[str] = None) -> UnparkResponse:
        data = self._request(
            "POST",
            f"/parked/{parked_call_id}/unpark",
            json={"target_agent_id": target_agent_id or self.agent_id},
        )
        return UnparkResponse.model_validate(data)

    def transfer(self, call_id: int, target_agent_id: str) -> UnparkResponse:
        data = self._request(
            "POST",
            f"/calls/{call_id}/transfer",
            json={"agent_id": self.agent_id, "target_agent_id": target_agent_id},
        )
        return UnparkResponse.model_validate(data)

    def complete_transfer(self, call_id: int) -> bool:
        return self._request("POST", f"/calls/{call_id}/transfer/complete", json={"agent_id": self.agent_id})["ok"]

    def end_call(self, call_id: int) -> bool:
        return self._request("POST", f"/calls/{call_id}/end", json={"agent_id": self.agent_id})["ok"]

    # Change feed

    def events(self, after: int = 0) -> EventFeed:
        data = self._request("GET", f"/agents/{self.agent_id}/events", params={"after": after})
        return EventFeed.model_validate(data)


class ClientSession:
    """
    One agent's live state: authoritative fold plus optimistic overlay.

    The overlay only ever holds the results of this agent's own successful
    calls. Whenever the authoritative view disagrees with it, the
    authoritative view wins and the overlay entry is dropped.
    """

    def __init__(self, client: SwitchboardClient, disconnect: Optional[Callable[[Any], None]] = None):
        self.client = client
        self.agent_id = client.agent_id
        self.authoritative = AgentView(agent_id=self.agent_id)
        self._disconnect = disconnect
        self._legs: Dict[int, Any] = {}
        self._optimistic_active: Optional[int] = None
        self._optimistic_parked: Dict[int, ParkedCallView] = {}
        self._optimistic_unparked: Set[int] = set()

    # Speculative legs

    def teardown(self, call_id: int) -> bool:
        """Disconnect the speculative leg for ``call_id``. Safe to call repeatedly."""
        leg = self._legs.pop(call_id, None)
        if leg is None:
            return False
        if self._disconnect is not None:
            self._disconnect(leg)
        logger.info("speculative_leg_torn_down", agent_id=self.agent_id, call_id=call_id)
        return True

    def has_leg(self, call_id: int) -> bool:
        return call_id in self._legs

    # Actions

    def accept(self, call_id: int, leg: Any = None) -> ClaimResponse:
        """
        Answer a ringing call.

        ``leg`` is the provider leg the browser already connected; it is kept
        only if the claim wins.
        """
        if leg is not None:
            self._legs[call_id] = leg
        try:
            result = self.client.claim(call_id)
        except (ClaimConflict, NotFound):
            self.teardown(call_id)
            raise
        self._optimistic_active = call_id
        return result

    def decline(self, call_id: int) -> bool:
        self.teardown(call_id)
        return self.client.decline(call_id)

    def park(self, call_id: int) -> ParkResponse:
        if self.current().active_call_id != call_id:
            raise StaleState(f"Call '{call_id}' is not this agent's active call")
        result = self.client.park(call_id)
        self.teardown(call_id)
        if self._optimistic_active == call_id:
            self._optimistic_active = None
        self._optimistic_parked[result.parked_call_id] = ParkedCallView(
            parked_call_id=result.parked_call_id,
            call_id=call_id,
            parked_by_agent_id=self.agent_id,
        )
        return result

    def unpark(self, parked_call_id: int, target_agent_id: Optional[str] = None) -> UnparkResponse:
        result = self.client.unpark(parked_call_id, target_agent_id)
        self._optimistic_parked.pop(parked_call_id, None)
        self._optimistic_unparked.add(parked_call_id)
        return result

    def transfer(self, call_id: int, target_agent_id: str) -> UnparkResponse:
        if self.current().active_call_id != call_id:
            raise StaleState(f"Call '{call_id}' is not this agent's active call")
        result = self.client.transfer(call_id, target_agent_id)
        self.teardown(call_id)
        if self._optimistic_active == call_id:
            self._optimistic_active = None
        return result

    def hang_up(self, call_id: int) -> bool:
        ok = self.client.end_call(call_id)
        self.teardown(call_id)
        if self._optimistic_active == call_id:
            self._optimistic_active = None
        return ok

    # Reconciliation

    def sync(self) -> AgentView:
        """Pull events past the cursor, fold them and settle the overlay."""
        feed = self.client.events(after=self.authoritative.cursor)
        self.apply(feed.events)
        return self.current()

    def apply(self, events) -> None:
        self.authoritative = fold(events, self.agent_id, self.authoritative)
        self._settle()

    def _settle(self) -> None:
        view = self.authoritative

        if self._optimistic_active is not None:
            call_id = self._optimistic_active
            if view.active_call_id == call_id:
                self._optimistic_active = None
            elif call_id in view.resolved:
                # Ring resolved but not in our favour (or the call ended).
                self._discard_active(call_id)

        for parked_call_id in list(self._optimistic_parked):
            # Our own park echoed back: the authoritative entry replaces ours.
            if parked_call_id in view.parked:
                del self._optimistic_parked[parked_call_id]

        for parked_call_id in list(self._optimistic_unparked):
            if parked_call_id not in view.parked:
                self._optimistic_unparked.discard(parked_call_id)

        # A leg for a call that is no longer ours and no longer ringing for us.
        for call_id in list(self._legs):
            if call_id in view.resolved and view.active_call_id != call_id and call_id not in view.incoming:
                self.teardown(call_id)

    def _discard_active(self, call_id: int) -> None:
        self._optimistic_active = None
        self.teardown(call_id)
        logger.info(
            "optimistic_state_discarded",
            agent_id=self.agent_id,
            call_id=call_id,
            error=StaleState.code,
        )

    def current(self) -> AgentView:
        """Authoritative view with this agent's unconfirmed actions laid over it."""
        view = self.authoritative.copy()
        if self._optimistic_active is not None:
            view.active_call_id = self._optimistic_active
            view.incoming.pop(self._optimistic_active, None)
        for parked_call_id, entry in self._optimistic_parked.items():
            view.parked.setdefault(parked_call_id, entry)
            if view.active_call_id == entry.call_id:
                view.active_call_id = None
        for parked_call_id in self._optimistic_unparked:
            view.parked.pop(parked_call_id, None)
        return view
