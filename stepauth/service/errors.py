from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``;
    the API layer renders ``message`` into the response envelope.
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Missing or malformed input, raised before any lookup (400)."""

    status_code = 400
    error_code = "validation_error"

    def __init__(self, errors: List[str], message: str = "Validation failed") -> None:
        super().__init__(message, detail={"errors": list(errors)})
        self.errors = list(errors)


class UnknownStep(ServiceError):
    """Legacy dispatcher received a step name it does not know (400)."""

    status_code = 400
    error_code = "unknown_step"

    def __init__(self, step: str) -> None:
        super().__init__(f"Unknown step: {step}", detail={"step": step})
        self.step = step


class InvalidCredentials(ServiceError):
    """Identity absent, inactive, or password mismatch (401).

    The three causes share one message so callers cannot enumerate accounts.
    """

    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self) -> None:
        super().__init__("Invalid user credentials")


class MobileRequired(ServiceError):
    status_code = 400
    error_code = "mobile_required"

    def __init__(self) -> None:
        super().__init__("Mobile number is required for OTP verification")


class OtpError(ServiceError):
    """One-time-code verification failure; ``reason`` is shown to the caller."""

    status_code = 401
    reason: str = "otp_invalid"

    def __init__(self) -> None:
        super().__init__(f"Invalid OTP: {self.reason}", error_code=self.reason)


class OtpNotFound(OtpError):
    reason = "otp_not_found"


class OtpUsed(OtpError):
    reason = "otp_used"


class OtpExpired(OtpError):
    reason = "otp_expired"


class OtpMismatch(OtpError):
    reason = "otp_mismatch"


class OtpAttemptsExceeded(OtpError):
    reason = "otp_attempts_exceeded"


class SessionInvalid(ServiceError):
    """Session lookup failed with reason ``not_found``, ``inactive`` or ``expired`` (401)."""

    status_code = 401
    error_code = "session_invalid"

    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid session: {reason}", detail={"reason": reason})
        self.reason = reason


class InvalidToken(ServiceError):
    status_code = 401
    error_code = "invalid_token"

    def __init__(self) -> None:
        super().__init__("Invalid or expired token")


class DeliveryFailure(ServiceError):
    """A delivery channel could not send a code; logged, never surfaced."""

    status_code = 502
    error_code = "delivery_failure"

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(message, detail={"channel": channel})
        self.channel = channel


class InternalError(ServiceError):
    """Unexpected store or signing failure (500)."""

    status_code = 500
    error_code = "server_error"

    def __init__(self, message: str = "Internal server error", *, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail=detail)


class SessionCreationFailed(InternalError):
    """The code was consumed but the session row could not be written.

    Not retryable with the same code; the client must restart the login.
    """

    error_code = "session_creation_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnknownStep",
    "InvalidCredentials",
    "MobileRequired",
    "OtpError",
    "OtpNotFound",
    "OtpUsed",
    "OtpExpired",
    "OtpMismatch",
    "OtpAttemptsExceeded",
    "SessionInvalid",
    "InvalidToken",
    "DeliveryFailure",
    "InternalError",
    "SessionCreationFailed",
]
