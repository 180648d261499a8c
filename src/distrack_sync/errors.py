"""Error types raised by the token manager, API client and session queue."""

from typing import Optional

__all__ = [
    "DisTrackError",
    "NotInitializedError",
    "NotLinkedError",
    "InvalidCredentialError",
    "StorageError",
    "MalformedResponseError",
    "RequestCancelledError",
    "ApiError",
    "AuthenticationError",
    "TransientNetworkError",
    "RequestTimeoutError",
    "LinkExpiredError",
    "InvalidSessionError",
]


class DisTrackError(Exception):
    """Base class for DisTrack sync errors."""

    pass


class NotInitializedError(DisTrackError):
    """A component was used before its initialize() call."""

    def __init__(self, message: str = "Token manager not initialized"):
        super().__init__(message)


class NotLinkedError(DisTrackError):
    """No usable refresh token - the device must be linked again."""

    def __init__(self, message: str = "DisTrack device is not linked"):
        super().__init__(message)


class InvalidCredentialError(NotLinkedError):
    """The refresh endpoint rejected the stored refresh token."""

    def __init__(self, message: str = "Refresh token rejected, device must be re-linked"):
        super().__init__(message)


class StorageError(DisTrackError):
    """Secure store or state store failed to read or write."""

    pass


class MalformedResponseError(DisTrackError):
    """Response body is missing a required field or has the wrong type."""

    pass


class RequestCancelledError(DisTrackError):
    """The caller cancelled the request."""

    def __init__(self, message: str = "Request cancelled"):
        super().__init__(message)


class ApiError(DisTrackError):
    """Non-retryable HTTP error response."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        self.message = message
        detail = f": {message}" if message else ""
        super().__init__(f"API error ({status_code}){detail}")


class AuthenticationError(ApiError):
    """401 that survived the refresh-and-retry."""

    def __init__(self, message: str = "Invalid or expired access token"):
        super().__init__(401, message)


class TransientNetworkError(DisTrackError):
    """Connection failure or server error; safe to retry later."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RequestTimeoutError(TransientNetworkError):
    """Request timed out."""

    def __init__(self, message: str = "Request timed out"):
        super().__init__(message)


class LinkExpiredError(DisTrackError):
    """Link session expired or was rejected by the server."""

    def __init__(self, message: str = "Link code expired, start linking again"):
        super().__init__(message)


class InvalidSessionError(DisTrackError, ValueError):
    """Session payload is missing a required field."""

    pass
