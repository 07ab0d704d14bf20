from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Account roles, ordered from least to most privileged."""

    STANDARD = "standard"
    SUB_ADMIN = "sub_admin"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def parse(cls, value: "Role | str | None") -> "Role":
        """Coerce ``value`` to a role, treating unknown values as STANDARD."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.STANDARD


class OtpPurpose(str, Enum):
    LOGIN = "login"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_VERIFIED = "password_verified"


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    role: Role = Role.STANDARD
    is_active: bool = True
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    refresh_token_hash: Optional[str] = None
    last_login_at: Optional[datetime] = None
    email_verified: bool = False
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.STANDARD,
        name: Optional[str] = None,
        is_active: bool = True,
        email_verified: bool = False,
        created_at: Optional[datetime] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            role=role,
            is_active=is_active,
            email_verified=email_verified,
            name=name,
            created_at=created_at or utcnow(),
        )
