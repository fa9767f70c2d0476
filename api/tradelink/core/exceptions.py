"""
Error taxonomy shared by services and routers.

Every error carries the HTTP status it maps to; the exception handlers in
``tradelink.main`` turn them into ``{"success": false, "message": ...}``.
"""
from fastapi import status


class TradeLinkError(Exception):
    """Base class for all application errors"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"
    # True when repeating the same action may succeed
    retryable: bool = False

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(TradeLinkError):
    """Malformed or missing input"""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class AuthError(TradeLinkError):
    """Bad credentials or an invalid identity token"""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid or expired token"


class ForbiddenError(TradeLinkError):
    """Account exists but is not verified"""

    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Your account is not verified. Please try again after some time."


class NotFoundError(TradeLinkError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "User not found"


class ConflictError(TradeLinkError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "User with this email already exists"


class NetworkFailure(TradeLinkError):
    """Broker unreachable; the user may retry the same action"""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Network error while contacting the broker"
    retryable = True


class ExchangeRejected(TradeLinkError):
    """Broker refused the authorization code; a fresh code is required"""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Failed to exchange auth code for access token"

    def __init__(self, message: str | None = None, error_code: int | None = None):
        super().__init__(message)
        self.error_code = error_code


class InternalError(TradeLinkError):
    """Catch-all, including broker responses of an unknown shape"""


class BrokerTokenInvalid(TradeLinkError):
    """Broker rejected a stored access token during a read call.

    The identity session is still valid, so this is a 409 and not a 401.
    """

    status_code = status.HTTP_409_CONFLICT
    default_message = "Broker token is invalid or expired"
