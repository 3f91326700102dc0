# otpcore/errors.py
"""
Error taxonomy for the OTP delivery core.

Every error carries a stable machine-readable `code` and the HTTP status the
route layer answers with. `otpcore.main` renders them in the standard error
envelope:

    {"error": {"code": "...", "message": "...", ...details}, "persona": "OTPCORE"}

Only exhaustion of a whole delivery plan surfaces as DeliveryExhausted; a single
adapter failure is recovered locally by the orchestrator.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class OtpCoreError(Exception):
    """Base class for all domain errors."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"code": self.code, "message": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class ValidationError(OtpCoreError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid input"


class RateLimitExceeded(OtpCoreError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "Rate limit exceeded. Please try again later."


class OutsideDeliveryWindow(OtpCoreError):
    code = "OUTSIDE_DELIVERY_WINDOW"
    status_code = 400
    default_message = "OTP delivery is outside your configured delivery window"


class InvalidOrExpired(OtpCoreError):
    code = "OTP_INVALID_OR_EXPIRED"
    status_code = 400
    default_message = "Invalid or expired verification code. Please request a new one."


class TooManyAttempts(OtpCoreError):
    code = "OTP_TOO_MANY_ATTEMPTS"
    status_code = 429
    default_message = "Too many failed attempts. Please request a new code."


class InvalidCode(OtpCoreError):
    code = "OTP_INVALID"
    status_code = 400

    def __init__(self, attempts_remaining: int, message: Optional[str] = None):
        self.attempts_remaining = attempts_remaining
        super().__init__(
            message or f"Invalid code. {attempts_remaining} attempts remaining.",
            attempts_remaining=attempts_remaining,
        )


class DeliveryExhausted(OtpCoreError):
    code = "DELIVERY_EXHAUSTED"
    status_code = 502
    default_message = "All delivery services failed"


class ContactMismatch(OtpCoreError):
    code = "CONTACT_MISMATCH"
    status_code = 403
    default_message = "The provided contact does not match your account"


class AlreadyVerified(OtpCoreError):
    code = "ALREADY_VERIFIED"
    status_code = 400
    default_message = "This contact is already verified"


class NotFound(OtpCoreError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class RetryConflict(OtpCoreError):
    code = "RETRY_IN_PROGRESS"
    status_code = 409
    default_message = "A retry for this delivery is already in progress"


class OperationDisabled(OtpCoreError):
    code = "OPERATION_DISABLED"
    status_code = 403
    default_message = "This operation is disabled to prevent accidental data loss"


class ServiceUnavailable(OtpCoreError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    default_message = "Service temporarily unavailable"
