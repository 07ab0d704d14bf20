from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from gatekeep.config import ConfigurationError


class AuthErrorCode(str, Enum):
    """Stable error codes for expected authentication outcomes.

    Each code maps to an HTTP status a transport layer can use:
    - invalid_credentials / invalid_or_expired_token / invalid_two_factor_code /
      invalid_or_expired_otp (401)
    - account_locked (423)
    - account_inactive / forbidden (403)
    - rate_limited (429)
    - email_taken (409)
    - not_found (404)
    - validation_error / two_factor_state (400)
    - service_unavailable (503)
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    INVALID_TWO_FACTOR_CODE = "invalid_two_factor_code"
    INVALID_OR_EXPIRED_OTP = "invalid_or_expired_otp"
    RATE_LIMITED = "rate_limited"
    EMAIL_TAKEN = "email_taken"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    TWO_FACTOR_STATE = "two_factor_state"
    SERVICE_UNAVAILABLE = "service_unavailable"


_STATUS_CODES = {
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.ACCOUNT_LOCKED: 423,
    AuthErrorCode.ACCOUNT_INACTIVE: 403,
    AuthErrorCode.INVALID_OR_EXPIRED_TOKEN: 401,
    AuthErrorCode.INVALID_TWO_FACTOR_CODE: 401,
    AuthErrorCode.INVALID_OR_EXPIRED_OTP: 401,
    AuthErrorCode.RATE_LIMITED: 429,
    AuthErrorCode.EMAIL_TAKEN: 409,
    AuthErrorCode.FORBIDDEN: 403,
    AuthErrorCode.NOT_FOUND: 404,
    AuthErrorCode.VALIDATION_ERROR: 400,
    AuthErrorCode.TWO_FACTOR_STATE: 400,
    AuthErrorCode.SERVICE_UNAVAILABLE: 503,
}

_DEFAULT_MESSAGES = {
    AuthErrorCode.INVALID_CREDENTIALS: "invalid credentials",
    AuthErrorCode.ACCOUNT_LOCKED: "account temporarily locked",
    AuthErrorCode.ACCOUNT_INACTIVE: "account is deactivated",
    AuthErrorCode.INVALID_OR_EXPIRED_TOKEN: "invalid or expired token",
    AuthErrorCode.INVALID_TWO_FACTOR_CODE: "invalid two-factor code",
    AuthErrorCode.INVALID_OR_EXPIRED_OTP: "invalid or expired code",
    AuthErrorCode.RATE_LIMITED: "too many requests",
    AuthErrorCode.EMAIL_TAKEN: "email already registered",
    AuthErrorCode.FORBIDDEN: "not permitted",
    AuthErrorCode.NOT_FOUND: "not found",
    AuthErrorCode.VALIDATION_ERROR: "invalid input",
    AuthErrorCode.TWO_FACTOR_STATE: "two-factor state does not allow this operation",
    AuthErrorCode.SERVICE_UNAVAILABLE: "service temporarily unavailable",
}


@dataclass(frozen=True)
class AuthFailure:
    """An expected, client-visible failure returned instead of raised."""

    code: AuthErrorCode
    message: str
    wait_seconds: Optional[int] = None

    @classmethod
    def of(
        cls,
        code: AuthErrorCode,
        message: Optional[str] = None,
        *,
        wait_seconds: Optional[int] = None,
    ) -> "AuthFailure":
        return cls(code, message or _DEFAULT_MESSAGES[code], wait_seconds)

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.code]

    def to_dict(self) -> dict:
        """Error envelope body for transports."""
        body: dict = {"error": {"code": self.code.value, "message": self.message}}
        if self.wait_seconds is not None:
            body["error"]["details"] = {"retry_after": self.wait_seconds}
        return body


__all__ = ["AuthErrorCode", "AuthFailure", "ConfigurationError"]
