from __future__ import annotations

from typing import Any


class AquaFlowError(Exception):
    """Base class for errors raised by the dispatch core."""

    kind = "error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "detail": self.message, **self.context}


class InvalidInput(AquaFlowError):
    kind = "invalid_input"


class NotFound(AquaFlowError):
    kind = "not_found"


class Unauthorized(AquaFlowError):
    kind = "unauthorized"


class Forbidden(AquaFlowError):
    kind = "forbidden"


class InvalidStateTransition(AquaFlowError):
    """A guard rejected a status change.

    Always carries the state the entity is actually in and the state the
    caller asked for, so the caller can explain the conflict.
    """

    kind = "invalid_state_transition"

    def __init__(
        self,
        message: str,
        *,
        current_status: str,
        requested_status: str,
        **context: Any,
    ) -> None:
        super().__init__(
            message,
            current_status=str(current_status),
            requested_status=str(requested_status),
            **context,
        )
        self.current_status = str(current_status)
        self.requested_status = str(requested_status)


class InvalidStateForVerification(InvalidStateTransition):
    kind = "invalid_state_for_verification"


class TerminalStateCancelReject(InvalidStateTransition):
    kind = "terminal_state_cancel_reject"


class AlreadyAssigned(AquaFlowError):
    kind = "already_assigned"


class PlumberUnavailable(AquaFlowError):
    kind = "plumber_unavailable"


class ConcurrentModification(AquaFlowError):
    kind = "concurrent_modification"


class ExternalServiceDegraded(AquaFlowError):
    """Raised by collaborators; the matching engine recovers from it."""

    kind = "external_service_degraded"
