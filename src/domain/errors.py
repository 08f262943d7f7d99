"""
Error taxonomy shared by the services and the API layer.

Each error carries a ``public_message`` that is safe to return to clients;
the exception's own text may include internal detail and is only logged.
Exhaustion of the candidate search is *not* an error: it is returned as a
normal ``matched=False, retry=False`` result.
"""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for all engine errors."""

    status_code = 500
    public_message = "Unable to process request. Please try again."

    def __init__(self, message: str = "", public_message: str | None = None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class ValidationError(DispatchError):
    """Malformed or out-of-range input.  Never retried internally."""

    status_code = 400
    public_message = "Invalid request parameters"


class NotFoundError(DispatchError):
    status_code = 404
    public_message = "Resource not found"


class InvalidStateError(DispatchError):
    """Operation not valid for the current ride / offer / captain status."""

    status_code = 409
    public_message = "Operation not allowed in the current state"


class InvalidStateTransition(InvalidStateError):
    """Raised when a status change violates a state machine."""


class ConcurrentModification(InvalidStateError):
    """A guarded (optimistic) update lost a race with another request."""

    public_message = "The ride was modified concurrently. Please retry."


class DependencyFailure(DispatchError):
    """Persistence or other critical collaborator failure."""

    status_code = 503
    public_message = "Unable to process request. Please try again."
