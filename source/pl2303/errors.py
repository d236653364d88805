"""Errors raised at the PL2303 driver level."""

from typing import Optional


class Pl2303Error(Exception):
    """Base class for all errors that are raised at the PL2303 driver level."""


class Pl2303GenericError(Pl2303Error):
    """A generic error occurred at the PL2303 driver level."""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"Pl2303GenericError(message={self.message!r})"


class PreconditionError(Pl2303Error):
    """A session could not be constructed because a precondition does not hold.

    No session object is produced when this is raised.
    """
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"PreconditionError(message={self.message!r})"


class TransportError(Pl2303Error):
    """A control, bulk, or interrupt transfer failed."""
    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(operation, cause)
        self.operation = operation
        self.cause = cause

    def __str__(self):
        return f"TransportError(operation={self.operation!r}, cause={self.cause!r})"


class SessionStateError(Pl2303Error):
    """An operation was attempted in a session state that does not allow it."""
    def __init__(self, operation: str, state):
        super().__init__(operation, state)
        self.operation = operation
        self.state = state

    def __str__(self):
        return f"SessionStateError(operation={self.operation!r}, state={self.state})"
