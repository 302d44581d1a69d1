"""Domain-specific exceptions for intercom operations.

These exceptions are safe to import from API layers without pulling in the
media or telephony stacks.
"""

from __future__ import annotations


class IntercomError(Exception):
    status_code: int = 500
    default_detail: str = "Intercom error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class AlreadyInCallError(IntercomError):
    status_code = 409
    default_detail = "A call is already in progress."


class InvalidCallStateError(IntercomError):
    status_code = 409
    default_detail = "Operation not allowed in the current call state."


class ConnectionFailedError(IntercomError):
    status_code = 503
    default_detail = "Media connection failed."

    def __init__(self, reason: str) -> None:
        super().__init__(f"Media connection failed: {reason}")
        self.reason = reason


class PermissionDeniedError(IntercomError):
    status_code = 403
    default_detail = "Microphone access was denied."


class InvalidPushPayloadError(IntercomError):
    status_code = 422
    default_detail = "Malformed incoming-call push payload."


class TelephonyRegistrationFailedError(IntercomError):
    status_code = 503
    default_detail = "Registration with the OS call provider failed."


class TelephonyRequestError(IntercomError):
    status_code = 502
    default_detail = "The native call provider rejected the request."


class NotConnectedError(IntercomError):
    status_code = 409
    default_detail = "Not connected to a media room."


class PushToTalkUnavailableError(IntercomError):
    status_code = 409
    default_detail = "Push-to-talk is not available right now."


class BackendError(IntercomError):
    status_code = 502
    default_detail = "Backend request failed."


class AuthenticationError(IntercomError):
    status_code = 401
    default_detail = "Authentication failed."


class InvalidSignInError(IntercomError):
    status_code = 422
    default_detail = "Email or password is malformed."


class ChannelNotAvailableError(IntercomError):
    status_code = 409
    default_detail = "The channel does not allow this call type."
