"""Error taxonomy shared by the session, webhook and API layers."""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for errors returned to callers of the gateway."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConflictError(GatewayError):
    """Raised on duplicate names or when an operation races an active lifecycle."""

    status_code = 409
    code = "CONFLICT"


class NotFoundError(GatewayError):
    status_code = 404
    code = "NOT_FOUND"


class ForbiddenError(GatewayError):
    status_code = 403
    code = "FORBIDDEN"


class AuthenticationError(GatewayError):
    status_code = 401
    code = "UNAUTHORIZED"


class SessionNotConnectedError(GatewayError):
    """Raised when a command is issued against a session that is not CONNECTED."""

    status_code = 409
    code = "SESSION_NOT_CONNECTED"

    def __init__(self, session_id: str, status: str | None = None) -> None:
        detail = f" (status: {status})" if status else ""
        super().__init__(f"Session {session_id} is not connected{detail}")
        self.session_id = session_id


class InvalidStateError(GatewayError):
    """Raised when a lifecycle operation is not valid in the current state."""

    status_code = 409
    code = "INVALID_STATE"


class ValidationError(GatewayError):
    status_code = 422
    code = "VALIDATION_ERROR"


class ServiceUnavailableError(GatewayError):
    """Raised when the record store cannot be reached."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"


class TransportError(GatewayError):
    """Raised when the chat engine fails to connect or pair."""

    status_code = 502
    code = "TRANSPORT_ERROR"


class WebhookConfigError(GatewayError):
    """Raised for webhook definitions that can never be delivered (bad URL)."""

    status_code = 422
    code = "INVALID_WEBHOOK"
