"""Error types raised across the realtime session stack."""

from typing import Optional


class RealtimeError(Exception):
    """Base error.

    ``str(exc)`` carries diagnostic detail for the log; ``user_message`` is the
    text safe to show a person.
    """

    default_user_message = "Something went wrong."

    def __init__(
        self, detail: str, user_message: Optional[str] = None, status_code: Optional[int] = None
    ):
        super().__init__(detail)
        self.user_message = user_message or self.default_user_message
        self.status_code = status_code


class CredentialError(RealtimeError):
    """Missing, malformed or rejected session credential."""

    default_user_message = (
        "Could not obtain a session key. Please check the API key configuration."
    )


class TransportError(RealtimeError):
    """Handshake failure, abrupt close or send on a closed transport."""

    default_user_message = "The connection to the realtime service was lost."


class ProtocolParseError(RealtimeError):
    """Inbound frame that is not a valid protocol event."""

    default_user_message = "Received an unreadable message from the service."


class ToolResolutionError(RealtimeError):
    """A tool handler or the resolving model failed."""
