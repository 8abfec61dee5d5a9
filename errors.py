"""
Error taxonomy shared by the store, the REST gateway and the live channel.

Each error carries the HTTP status the gateway answers with and a message that
is safe to show to a client.
"""
from typing import Optional


class ChatError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(ChatError):
    status_code = 404
    default_message = "Not found"


class Forbidden(ChatError):
    status_code = 403
    default_message = "Not a participant of this conversation"


class Unauthorized(ChatError):
    status_code = 401
    default_message = "Not authorized"


class ValidationError(ChatError):
    status_code = 400
    default_message = "Invalid request"


class UpstreamFailure(ChatError):
    status_code = 502
    default_message = "Upstream service failure"


class ProtocolIgnored(ChatError):
    """Event received in a connection state that cannot handle it. Never sent to clients."""
    status_code = 400
    default_message = "Event ignored"
