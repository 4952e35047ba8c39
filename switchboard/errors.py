"""Typed coordination errors.

Services raise these; the HTTP layer maps each one to a status code and a
stable ``error`` string so clients can rebuild the same exception type on
their side (see ``switchboard.client``).

Usage:
    # In service layer
    raise NotFound("Parked call", parked_call_id)

    # In route handler (done once, by the app-level exception handler)
    except SwitchboardError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
"""

from typing import Any, Optional


class SwitchboardError(Exception):
    """Base exception for all coordination errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SwitchboardError":
        """Rebuild an error from a ``to_dict()`` body (client side)."""
        error_cls = ERRORS_BY_CODE.get(data.get("error"), SwitchboardError)
        error = error_cls.__new__(error_cls)
        SwitchboardError.__init__(error, data.get("detail") or error_cls.code)
        for key, value in data.items():
            if key not in ("error", "detail"):
                setattr(error, key, value)
        return error


class ClaimConflict(SwitchboardError):
    """Another agent already owns the call. Maps to HTTP 409."""

    status_code = 409
    code = "claim_conflict"

    def __init__(self, call_id: Any, owner_agent_id: Optional[str] = None) -> None:
        if owner_agent_id:
            message = f"Call '{call_id}' is owned by agent '{owner_agent_id}'"
        else:
            message = f"Call '{call_id}' is owned by another agent"
        super().__init__(message)
        self.call_id = call_id
        self.owner_agent_id = owner_agent_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["owner_agent_id"] = self.owner_agent_id
        return data


class NotFound(SwitchboardError):
    """Record missing or already resolved by a concurrent actor. Maps to HTTP 404."""

    status_code = 404
    code = "not_found"

    def __init__(self, resource_type: str, identifier: Any) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class AgentNotEligible(SwitchboardError):
    """Agent is offline or already on a call. Maps to HTTP 409."""

    status_code = 409
    code = "agent_not_eligible"

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent '{agent_id}' is not available for a call")
        self.agent_id = agent_id


class ProviderUnavailable(SwitchboardError):
    """Telephony provider request failed after retries. Maps to HTTP 502."""

    status_code = 502
    code = "provider_unavailable"

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(f"Telephony provider {operation} failed: {reason}")
        self.operation = operation
        self.reason = reason


class StaleState(SwitchboardError):
    """The state an action was based on has been superseded. Maps to HTTP 409."""

    status_code = 409
    code = "stale_state"


class StoreUnreachable(SwitchboardError):
    """Shared datastore unavailable; no transition was made. Maps to HTTP 503."""

    status_code = 503
    code = "store_unreachable"


ERRORS_BY_CODE: dict[str, type[SwitchboardError]] = {
    cls.code: cls
    for cls in (
        ClaimConflict,
        NotFound,
        AgentNotEligible,
        ProviderUnavailable,
        StaleState,
        StoreUnreachable,
    )
}
