"""Error types raised by the call registry and signaling relay."""

from __future__ import annotations

from typing import Optional


class CallError(Exception):
    """Base class for failures reported back to the acting user."""

    status_code = 400
    error = "call_error"

    def __init__(self, message: str, call_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.call_id = call_id

    def to_dict(self) -> dict:
        payload = {"error": self.error, "message": self.message}
        if self.call_id:
            payload["callId"] = self.call_id
        return payload


class CallNotFound(CallError):
    """Raised when a referenced call session does not exist."""

    status_code = 404
    error = "call_not_found"


class CallUnauthorized(CallError):
    """Raised when the acting user may not perform the action on this call."""

    status_code = 403
    error = "not_allowed"


class PeerUnreachable(CallError):
    """Raised when the target user has no live connection."""

    status_code = 400
    error = "peer_offline"


class InvalidTransition(CallError):
    """Raised when the call is not in the state the action requires."""

    status_code = 409
    error = "invalid_transition"

    def __init__(self, message: str, call_id: Optional[str] = None, current_status: Optional[str] = None) -> None:
        super().__init__(message, call_id)
        self.current_status = current_status

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["currentStatus"] = self.current_status
        return payload
