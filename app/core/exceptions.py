"""
Domain error kinds shared by the one-shot API and the live channel.

Transports translate each kind into its own response without collapsing them:
clients end the session when they see ``unauthorized`` from any operation.
"""


class ChatError(Exception):
    """Base class for errors raised by the chat core."""

    error_type = "chat_error"
    status_code = 500
    default_message = "Chat error"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(ChatError):
    """No principal, or the principal lacks the relationship the resource requires."""
    error_type = "unauthorized"
    status_code = 401
    default_message = "Unauthorized"


class InvalidToken(ChatError):
    """Bearer token with a bad signature, malformed payload, or stale version."""
    error_type = "invalid_token"
    status_code = 401
    default_message = "Invalid token"


class NotFound(ChatError):
    """The requested resource does not exist."""
    error_type = "not_found"
    status_code = 404
    default_message = "Not found"


class Conflict(ChatError):
    error_type = "conflict"
    status_code = 409
    default_message = "Conflict"


class BadRequest(ChatError):
    """Arguments that cannot describe a valid operation."""
    error_type = "invalid_request"
    status_code = 400
    default_message = "Invalid request"


class InvalidPageRequest(BadRequest):
    """Window arguments that cannot describe a page."""
    default_message = "Invalid page request"


class InternalError(ChatError):
    """Unexpected failure below the chat core, reported without its details."""
    error_type = "internal_error"
    status_code = 500
    default_message = "An unexpected error occurred"
