"""
Engine error taxonomy.

Transition and remote errors are turned into result objects before they reach
rendering code; the HTTP layer maps the ones that do escape onto status codes.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for every error raised by the engine."""

    code = "engine_error"

    def __init__(self, message: str, appointment_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.appointment_id = appointment_id


class InvalidTransition(EngineError):
    """Transition out of a terminal state, or a status that cannot be normalized."""

    code = "invalid_transition"

    def __init__(
        self,
        message: str,
        appointment_id: Optional[str] = None,
        current_status: Optional[str] = None,
    ):
        super().__init__(message, appointment_id)
        self.current_status = current_status


class AppointmentNotFound(EngineError):
    code = "not_found"


class RemoteCallFailed(EngineError):
    """A call to one of the external services failed (network, server, timeout)."""

    code = "remote_failure"


class RemoteMutationFailed(RemoteCallFailed):
    """A status change or notification mutation was not applied remotely."""


class RemoteFetchFailed(RemoteCallFailed):
    """A read from an external service failed."""


class MalformedPayload(EngineError):
    """
    Content that even the fallback parser could not make sense of.

    Never propagated to callers: parsers log it and degrade to the raw value.
    """

    code = "malformed_payload"
