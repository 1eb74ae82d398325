"""Domain-specific exceptions for call and session operations.

These exceptions are safe to import from API layers without pulling in the
Twilio or websocket clients.
"""

from __future__ import annotations


class CallServiceError(Exception):
    status_code: int = 500
    default_detail: str = "Call service error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ConfigurationError(CallServiceError):
    status_code = 503
    default_detail = "Service is not configured."


class ProviderError(CallServiceError):
    status_code = 502
    default_detail = "Telephony provider rejected the request."


class CallNotFoundError(CallServiceError):
    status_code = 404
    default_detail = "Call not found."


class IllegalTransitionError(CallServiceError):
    status_code = 409
    default_detail = "Illegal call state transition."


class CallFrozenError(CallServiceError):
    status_code = 409
    default_detail = "Call has already ended."


class SessionCapacityError(CallServiceError):
    status_code = 503
    default_detail = "No free session slot."


class MalformedMessage(CallServiceError):
    status_code = 400
    default_detail = "Malformed message."


class UnknownFunction(CallServiceError):
    status_code = 404
    default_detail = "Unknown function."


class InvalidArguments(CallServiceError):
    status_code = 422
    default_detail = "Invalid JSON arguments for function call."
