from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds raised by the auth core.

    The value is the stable machine-readable code sent to clients. Services
    only ever raise a kind; the HTTP status is chosen at the API boundary.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    OTP_SESSION_NOT_FOUND = "otp_session_not_found"
    OTP_MISMATCH = "otp_mismatch"
    OTP_ATTEMPTS_EXHAUSTED = "otp_attempts_exhausted"
    OTP_RESEND_EXHAUSTED = "otp_resend_exhausted"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    TOKEN_REVOKED = "token_revoked"
    RATE_LIMITED = "rate_limited"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"


class ServiceError(Exception):
    """Base class for typed service failures.

    Subclasses pin ``kind`` and a default client-safe ``message``; ``detail``
    carries structured extras such as remaining attempts or retry hints.
    """

    kind: ErrorKind = ErrorKind.DEPENDENCY_UNAVAILABLE
    default_message: str = "service error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.kind.value


class InvalidCredentials(ServiceError):
    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "Invalid email or password"


class AccountLocked(ServiceError):
    kind = ErrorKind.ACCOUNT_LOCKED
    default_message = "Account is temporarily locked due to too many failed login attempts"


class AccountInactive(ServiceError):
    kind = ErrorKind.ACCOUNT_INACTIVE
    default_message = "Account is deactivated"


class OTPSessionNotFoundOrExpired(ServiceError):
    kind = ErrorKind.OTP_SESSION_NOT_FOUND
    default_message = "Invalid or expired verification session"


class OTPMismatch(ServiceError):
    kind = ErrorKind.OTP_MISMATCH

    def __init__(self, remaining_attempts: int) -> None:
        self.remaining_attempts = max(0, remaining_attempts)
        super().__init__(
            f"Invalid verification code. {self.remaining_attempts} attempts remaining.",
            detail={"remainingAttempts": self.remaining_attempts},
        )


class OTPAttemptsExhausted(ServiceError):
    kind = ErrorKind.OTP_ATTEMPTS_EXHAUSTED
    default_message = "Maximum verification attempts exceeded. Please request a new code."


class OTPResendExhausted(ServiceError):
    kind = ErrorKind.OTP_RESEND_EXHAUSTED
    default_message = "Maximum resend attempts exceeded. Please start login again."


class TokenExpired(ServiceError):
    kind = ErrorKind.TOKEN_EXPIRED
    default_message = "Token has expired"


class TokenInvalid(ServiceError):
    kind = ErrorKind.TOKEN_INVALID
    default_message = "Invalid token"


class TokenRevoked(ServiceError):
    kind = ErrorKind.TOKEN_REVOKED
    default_message = "Token has been revoked"


class RateLimited(ServiceError):
    kind = ErrorKind.RATE_LIMITED
    default_message = "Too many requests, please try again later."

    def __init__(
        self,
        retry_after: int,
        message: Optional[str] = None,
        *,
        penalty_level: Optional[int] = None,
    ) -> None:
        self.retry_after = max(1, int(retry_after))
        self.penalty_level = penalty_level
        detail: dict = {"retryAfter": self.retry_after}
        if penalty_level is not None:
            detail["penaltyLevel"] = penalty_level
        super().__init__(message, detail=detail)


class DependencyUnavailable(ServiceError):
    kind = ErrorKind.DEPENDENCY_UNAVAILABLE
    default_message = "A required service is temporarily unavailable"


# Kinds each component may raise
CREDENTIAL_ERRORS = frozenset(
    {
        ErrorKind.INVALID_CREDENTIALS,
        ErrorKind.ACCOUNT_LOCKED,
        ErrorKind.ACCOUNT_INACTIVE,
        ErrorKind.DEPENDENCY_UNAVAILABLE,
    }
)
OTP_ERRORS = frozenset(
    {
        ErrorKind.OTP_SESSION_NOT_FOUND,
        ErrorKind.OTP_MISMATCH,
        ErrorKind.OTP_ATTEMPTS_EXHAUSTED,
        ErrorKind.OTP_RESEND_EXHAUSTED,
        ErrorKind.ACCOUNT_INACTIVE,
        ErrorKind.DEPENDENCY_UNAVAILABLE,
    }
)
TOKEN_ERRORS = frozenset(
    {
        ErrorKind.TOKEN_EXPIRED,
        ErrorKind.TOKEN_INVALID,
        ErrorKind.TOKEN_REVOKED,
        ErrorKind.ACCOUNT_INACTIVE,
        ErrorKind.DEPENDENCY_UNAVAILABLE,
    }
)
GUARD_ERRORS = frozenset({ErrorKind.RATE_LIMITED})


__all__ = [
    "ErrorKind",
    "ServiceError",
    "InvalidCredentials",
    "AccountLocked",
    "AccountInactive",
    "OTPSessionNotFoundOrExpired",
    "OTPMismatch",
    "OTPAttemptsExhausted",
    "OTPResendExhausted",
    "TokenExpired",
    "TokenInvalid",
    "TokenRevoked",
    "RateLimited",
    "DependencyUnavailable",
    "CREDENTIAL_ERRORS",
    "OTP_ERRORS",
    "TOKEN_ERRORS",
    "GUARD_ERRORS",
]
