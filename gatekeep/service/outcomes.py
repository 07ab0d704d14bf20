"""Tagged results returned by the auth services.

Callers dispatch on the concrete type (``isinstance`` or ``match``) instead of
probing result objects for optional fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple, Union

from gatekeep.service.errors import AuthFailure
from gatekeep.service.session_policy import SessionTimeouts
from gatekeep.service.tokens import TokenPair
from gatekeep.storage.models import Account, Role


@dataclass(frozen=True)
class AccountView:
    """Client-safe projection of an account."""

    id: str
    email: str
    role: Role
    is_active: bool
    two_factor_enabled: bool
    email_verified: bool
    name: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountView":
        return cls(
            id=account.id,
            email=account.email,
            role=account.role,
            is_active=account.is_active,
            two_factor_enabled=account.two_factor_enabled,
            email_verified=account.email_verified,
            name=account.name,
        )


@dataclass(frozen=True)
class Authenticated:
    account: AccountView
    tokens: TokenPair
    timeouts: SessionTimeouts


@dataclass(frozen=True)
class TwoFactorRequired:
    account_id: str


@dataclass(frozen=True)
class TwoFactorSetupRequired:
    account_id: str
    setup_token: str
    expires_at: datetime


@dataclass(frozen=True)
class EmailOtpRequired:
    account_id: str
    expires_at: datetime
    # Populated when the step follows a first-time 2FA enrollment
    recovery_codes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Registered:
    account: AccountView
    tokens: TokenPair
    timeouts: SessionTimeouts


@dataclass(frozen=True)
class IssuedOtp:
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class OtpDispatched:
    expires_at: datetime


@dataclass(frozen=True)
class Verified:
    pass


@dataclass(frozen=True)
class VerificationWindow:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class TwoFactorEnrollment:
    secret: str
    otpauth_uri: str
    qr_code: str


@dataclass(frozen=True)
class RecoveryCodes:
    codes: Tuple[str, ...]


@dataclass(frozen=True)
class Completed:
    message: str


LoginOutcome = Union[Authenticated, TwoFactorRequired, TwoFactorSetupRequired, AuthFailure]
SecondFactorOutcome = Union[Authenticated, EmailOtpRequired, AuthFailure]
