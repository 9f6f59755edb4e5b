"""Error taxonomy for reconciliation.

Every fatal condition stops the current reconciliation call and surfaces
as one of these exceptions. Messages carry the kind, the identifiers and,
where the control plane answered, its status code and body text.
"""

from __future__ import annotations


class ReconcileError(Exception):
    """Base class for all reconciliation failures."""

    pass


class PreconditionError(ReconcileError):
    """Raised before any remote call when caller input is unusable.

    Missing ancestor keys and malformed identity keys end up here.
    """

    pass


class UnsupportedOperationError(PreconditionError):
    """Raised when a kind does not implement the requested operation."""

    pass


class GatewayError(ReconcileError):
    """Base class for failures talking to the control plane."""

    pass


class TransportError(GatewayError):
    """Raised when a gateway call could not complete at all."""

    pass


class RemoteRejectedError(GatewayError):
    """Raised when the control plane answered with a non-success status."""

    def __init__(self, message: str, status: int, body: str = "") -> None:
        detail = f"{message}, status was: {status}"
        if body:
            detail = f"{detail}, error: {body}"
        super().__init__(detail)
        self.status = status
        self.body = body


class PollCancelledError(ReconcileError):
    """Raised when a poll stops because its deadline passed or was cancelled."""

    def __init__(
        self,
        label: str,
        attempts: int,
        last_error: Exception | None = None,
        *,
        reason: str = "context cancelled",
    ) -> None:
        message = f"{label}: {reason} after {attempts} attempt(s)"
        if last_error is not None:
            message = f"{message}, last error: {last_error}"
        super().__init__(message)
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        self.reason = reason


class ConvergenceTimeoutError(PollCancelledError):
    """Raised when a remote resource never reached its ready state in time."""

    def __init__(
        self,
        kind: str,
        resource_id: str,
        ready_state: str,
        last_state: str,
        attempts: int,
    ) -> None:
        ReconcileError.__init__(
            self,
            f"{kind} {resource_id} took too long to enter state '{ready_state}'. "
            f"Final state was '{last_state}'.",
        )
        self.label = f"{kind} {resource_id}"
        self.attempts = attempts
        self.last_error = None
        self.reason = "deadline exceeded"
        self.kind = kind
        self.resource_id = resource_id
        self.ready_state = ready_state
        self.last_state = last_state


class ResourceNotReadyError(ReconcileError):
    """Transient: the remote resource exists but has not reached its ready state."""

    pass
